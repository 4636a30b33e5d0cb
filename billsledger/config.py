import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "bills-ledger")

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./bills_ledger.db")
# Pool: chia đều max_connections cho số pod. Env để tune khi scale.
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "15"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "5"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))

# Redis: session store
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
SESSION_TTL = int(os.getenv("SESSION_TTL_SECONDS", str(7 * 86400)))

# Giảm rounds nếu CPU cao; 12 = an toàn hơn nhưng ~2x chậm
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3001").split(",")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "NGN")

# Realtime
REALTIME_EVENT_TIMEOUT = float(os.getenv("REALTIME_EVENT_TIMEOUT", "10"))
REALTIME_SEND_TIMEOUT = float(os.getenv("REALTIME_SEND_TIMEOUT", "5"))
