import asyncio

from passlib.context import CryptContext

from billsledger.config import BCRYPT_ROUNDS

pwd = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)


def hash_password(pw: str) -> str:
    return pwd.hash(pw)


def verify_password(pw: str, hashed: str) -> bool:
    return pwd.verify(pw, hashed)


# bcrypt ăn CPU, chạy ngoài event loop
async def hash_password_async(pw: str) -> str:
    return await asyncio.to_thread(hash_password, pw)


async def verify_password_async(pw: str, hashed: str) -> bool:
    return await asyncio.to_thread(verify_password, pw, hashed)
