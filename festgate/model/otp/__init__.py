import os
from typing import Optional
import redis.asyncio as redis

from ...infra.sql import Database

BACKEND = os.getenv("OTP_BACKEND", "redis").lower()  # 'redis' | 'pg'

if BACKEND == "pg":
    from ._postgres import OtpStore as _OtpStore
else:
    from ._redis import OtpStore as _OtpStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[Database] = None,
              r: Optional[redis.Redis] = None,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "pg":
        if db is None:
            raise RuntimeError("OtpStore(pg) requires db=Database")
        from ._postgres import OtpStore as PgOtpStore
        return PgOtpStore(db=db)
    else:
        if r is None:
            raise RuntimeError("OtpStore(redis) requires r=redis.Redis")
        from ._redis import OtpStore as RedisOtpStore
        return RedisOtpStore(r=r)


OtpStore = _OtpStore
__all__ = ["OtpStore", "new_store", "BACKEND"]
