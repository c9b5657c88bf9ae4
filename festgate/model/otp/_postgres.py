from __future__ import annotations
from typing import Optional, Dict, Any
import time
from sqlalchemy import text

from ...infra.sql import Database

HOUR = 3600


class OtpStore:
    """OTP challenges in the relational store (tables come from the ORM
    metadata, see ``otp_challenges`` / ``otp_requests``)."""

    def __init__(self, *, db: Database) -> None:
        self.db = db
        self.gated = db.gated

    async def count_recent_requests(self, email: str,
                                    window: int = HOUR) -> int:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(text("""
                      DELETE FROM otp_requests WHERE created_at < :cut
                    """), {"cut": time.time() - window})
                    n = (await s.execute(text("""
                      SELECT COUNT(*) FROM otp_requests WHERE email = :e
                    """), {"e": email})).scalar_one()
        return int(n)

    async def save_challenge(self, challenge: Dict[str, Any]) -> None:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(text("""
                      INSERT INTO otp_challenges(
                        email, challenge_id, code, purpose, expires_at,
                        consumed, consumed_at, attempts, created_at
                      ) VALUES (
                        :email, :challenge_id, :code, :purpose, :expires_at,
                        :no, NULL, 0, :created_at
                      )
                      ON CONFLICT (email) DO UPDATE SET
                        challenge_id=EXCLUDED.challenge_id,
                        code=EXCLUDED.code,
                        purpose=EXCLUDED.purpose,
                        expires_at=EXCLUDED.expires_at,
                        consumed=EXCLUDED.consumed,
                        consumed_at=NULL,
                        attempts=0,
                        created_at=EXCLUDED.created_at
                    """), {
                        "email": challenge["email"],
                        "challenge_id": challenge["challenge_id"],
                        "code": challenge["code"],
                        "purpose": challenge["purpose"],
                        "expires_at": float(challenge["expires_at"]),
                        "no": False,
                        "created_at": float(challenge["created_at"]),
                    })
                    await s.execute(text("""
                      INSERT INTO otp_requests(email, created_at)
                      VALUES(:e, :ts)
                    """), {"e": challenge["email"],
                           "ts": float(challenge["created_at"])})

    async def get_challenge(self, email: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(text("""
                  SELECT * FROM otp_challenges WHERE email = :e
                """), {"e": email})).mappings().first()
        if row is None:
            return None
        out = dict(row)
        out["consumed"] = bool(out["consumed"])
        return out

    async def record_failed_attempt(self, email: str,
                                    challenge_id: str) -> int:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    row = (await s.execute(text("""
                      UPDATE otp_challenges SET attempts = attempts + 1
                      WHERE email = :e AND challenge_id = :c
                      RETURNING attempts
                    """), {"e": email, "c": challenge_id})).first()
        return int(row[0]) if row else 0

    async def consume(self, email: str, challenge_id: str) -> bool:
        # compare-and-set on consumed: exactly one caller sees a row
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    row = (await s.execute(text("""
                      UPDATE otp_challenges
                      SET consumed = :yes, consumed_at = :ts
                      WHERE email = :e AND challenge_id = :c
                        AND consumed = :no
                      RETURNING challenge_id
                    """), {"e": email, "c": challenge_id, "yes": True,
                           "no": False, "ts": time.time()})).first()
        return row is not None
