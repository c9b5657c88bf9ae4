# otp challenges in redis
from __future__ import annotations
from typing import Any, Callable, Dict, Optional
import time

import redis.asyncio as redis
from redis.exceptions import WatchError


# ---- keys
def k_otp(email: str) -> str: return f"otp:{email}"
def k_used(challenge_id: str) -> str: return f"otp:used:{challenge_id}"
def k_requests(email: str) -> str: return f"otp:req:{email}"


HOUR = 3600
KEEP = 24 * 3600  # expiry is judged by expires_at; the hash outlives it


def _decode(h: Dict[str, str]) -> Dict[str, Any]:
    return {
        "email": h.get("email", ""),
        "challenge_id": h.get("challenge_id", ""),
        "code": h.get("code", ""),
        "purpose": h.get("purpose", ""),
        "expires_at": float(h.get("expires_at", "0")),
        "consumed": h.get("consumed") == "1",
        "consumed_at": (float(h["consumed_at"])
                        if h.get("consumed_at") else None),
        "attempts": int(h.get("attempts", "0")),
        "created_at": float(h.get("created_at", "0")),
    }


class OtpStore:
    def __init__(self, r: redis.Redis) -> None:
        # expects decode_responses=True
        self.r = r

    async def count_recent_requests(self, email: str,
                                    window: int = HOUR) -> int:
        now = time.time()
        pipe = self.r.pipeline(transaction=True)
        pipe.zremrangebyscore(k_requests(email), 0, now - window)
        pipe.zcard(k_requests(email))
        _, n = await pipe.execute()
        return int(n)

    async def save_challenge(self, challenge: Dict[str, Any]) -> None:
        email = challenge["email"]
        mapping = {
            "email": email,
            "challenge_id": challenge["challenge_id"],
            "code": challenge["code"],
            "purpose": challenge["purpose"],
            "expires_at": str(challenge["expires_at"]),
            "consumed": "0",
            "consumed_at": "",
            "attempts": "0",
            "created_at": str(challenge["created_at"]),
        }
        pipe = self.r.pipeline(transaction=True)
        # replace, never merge, any outstanding challenge
        pipe.delete(k_otp(email))
        pipe.hset(k_otp(email), mapping=mapping)
        pipe.expire(k_otp(email), KEEP)
        pipe.zadd(k_requests(email),
                  {challenge["challenge_id"]: challenge["created_at"]})
        pipe.expire(k_requests(email), HOUR)
        await pipe.execute()

    async def get_challenge(self, email: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_otp(email))
        return _decode(h) if h else None

    async def _if_current(self, email: str, challenge_id: str,
                          queue: Callable[[Any], None]) -> Optional[list]:
        """Run the commands ``queue`` adds in one MULTI, only while the
        stored challenge is still ``challenge_id``. None if it was
        replaced."""
        async with self.r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(k_otp(email))
                    cur = await pipe.hget(k_otp(email), "challenge_id")
                    if cur != challenge_id:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    queue(pipe)
                    return await pipe.execute()
                except WatchError:
                    # touched between WATCH and EXEC; look again
                    continue

    async def record_failed_attempt(self, email: str,
                                    challenge_id: str) -> int:
        res = await self._if_current(
            email, challenge_id,
            lambda pipe: pipe.hincrby(k_otp(email), "attempts", 1),
        )
        # replaced in the meantime; count against nothing
        return 0 if res is None else int(res[0])

    async def consume(self, email: str, challenge_id: str) -> bool:
        # NX gate per challenge: exactly one caller wins
        ok = await self.r.set(k_used(challenge_id), "1", nx=True, ex=KEEP)
        if not ok:
            return False
        res = await self._if_current(
            email, challenge_id,
            lambda pipe: pipe.hset(k_otp(email), mapping={
                "consumed": "1", "consumed_at": str(time.time()),
            }),
        )
        return res is not None
