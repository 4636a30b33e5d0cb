from billsledger.routers import auth, bills, conversations, friends, notifications, organizations, transactions

all_routers = [
    auth.router,
    bills.router,
    transactions.router,
    conversations.router,
    friends.router,
    notifications.router,
    organizations.router,
]
