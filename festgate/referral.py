"""Friend-referral gate.

A booking holder with a paid, single, non-referral ticket may invite one
friend at a discount. Possession of the registered mailbox is proven with a
one-time code before the friend's registration is accepted.
"""
from __future__ import annotations
import secrets
from typing import Any, Dict, List, Optional

import structlog

from .allocator import price_booking
from .config import (
    BASE_PRICE, OTP_MAX_ATTEMPTS, OTP_MAX_REQUESTS_PER_HOUR, OTP_TTL_SECONDS,
    OTP_VERIFIED_WINDOW_SECONDS,
)
from .errors import (
    InvalidOtp, NotEligible, NotificationFailed, OtpAlreadyConsumed,
    OtpAttemptsExceeded, OtpExpired, TooManyOtpRequests, ValidationFailed,
)
from .helpers import new_id, normalize_email, now_ts, ct_equal
from .model.orm import Registration, ACTIVE_STATUSES, PENDING
from .model.store import RegistrationStore
from .notifier import Notifier
from .workflow import validate_person

logger = structlog.get_logger(__name__)

PURPOSE = "friend_invitation"


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


def ineligibility_reasons(reg: Registration) -> List[str]:
    reasons = []
    if reg.payment_status not in ACTIVE_STATUSES:
        reasons.append("payment must be verified to refer a friend")
    if reg.is_group_booking:
        reasons.append("group bookings cannot refer friends")
    if reg.is_friend_referral:
        reasons.append("friend referrals cannot refer other friends")
    if reg.has_referred_friend:
        reasons.append("a friend has already been referred")
    return reasons


def _mask(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:2]}{'*' * max(1, len(local) - 2)}@{domain}"


class FriendReferralGate:
    def __init__(self, store: RegistrationStore, otps,
                 notifier: Notifier) -> None:
        self.store = store
        self.otps = otps
        self.notifier = notifier

    async def offer_status(self) -> Dict[str, Any]:
        enabled = bool(await self.store.get_setting("friend_offer_enabled"))
        discount = int(await self.store.get_setting("friend_discount_amount"))
        discount = max(0, min(discount, BASE_PRICE))
        return {
            "enabled": enabled,
            "discountAmount": discount,
            "originalPrice": BASE_PRICE,
            "finalPrice": BASE_PRICE - discount,
        }

    async def _find_referrer(self, identifier: str) -> Optional[Registration]:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationFailed("identifier is required",
                                   {"fields": {"identifier": "required"}})
        if "@" in identifier:
            return await self.store.get_by_email(normalize_email(identifier))
        holder = await self.store.find_ticket(identifier)
        # member tickets belong to a group booking, which is never eligible
        return holder.registration if holder else None

    async def check_eligibility(self, identifier: str) -> Dict[str, Any]:
        offer = await self.offer_status()
        if not offer["enabled"]:
            raise NotEligible("friend referral offer is currently disabled",
                              {"reasons": ["offer disabled"]})

        referrer = await self._find_referrer(identifier)
        if referrer is None:
            raise NotEligible("no registration found for that email or "
                              "ticket number",
                              {"reasons": ["registration not found"]})
        reasons = ineligibility_reasons(referrer)
        if reasons:
            raise NotEligible("not eligible for friend referral",
                              {"reasons": reasons})

        email = referrer.email
        recent = await self.otps.count_recent_requests(email)
        if recent >= OTP_MAX_REQUESTS_PER_HOUR:
            raise TooManyOtpRequests(
                "too many verification codes requested; try again later",
                {"limit": OTP_MAX_REQUESTS_PER_HOUR},
            )

        ts = now_ts()
        challenge = {
            "email": email,
            "challenge_id": new_id(),
            "code": generate_otp(),
            "purpose": PURPOSE,
            "expires_at": ts + OTP_TTL_SECONDS,
            "created_at": ts,
        }
        await self.otps.save_challenge(challenge)
        logger.info("otp_issued", email=email,
                    challenge_id=challenge["challenge_id"])

        result = await self.notifier.send_otp(email, challenge["code"],
                                              challenge["expires_at"])
        if not result.sent:
            logger.error("otp_email_failed", email=email,
                         reason=result.reason)
            raise NotificationFailed("could not send the verification code",
                                     {"reason": result.reason})
        return {
            "eligible": True,
            "email": email,
            "maskedEmail": _mask(email),
            "name": referrer.name,
            "expiresIn": OTP_TTL_SECONDS,
            "discountAmount": offer["discountAmount"],
        }

    async def verify_otp(self, email: str, code: str) -> Dict[str, Any]:
        email = normalize_email(email)
        code = (code or "").strip()
        ch = await self.otps.get_challenge(email)
        if ch is None:
            raise OtpExpired("no active verification code; request a new one")
        if ch["consumed"]:
            raise OtpAlreadyConsumed("verification code already used")
        if ch["expires_at"] < now_ts():
            raise OtpExpired("verification code expired; request a new one")
        if ch["attempts"] >= OTP_MAX_ATTEMPTS:
            raise OtpAttemptsExceeded(
                "too many wrong codes; request a new one")

        if not ct_equal(ch["code"], code):
            attempts = await self.otps.record_failed_attempt(
                email, ch["challenge_id"])
            remaining = max(0, OTP_MAX_ATTEMPTS - attempts)
            logger.info("otp_mismatch", email=email, remaining=remaining)
            if remaining == 0:
                raise OtpAttemptsExceeded(
                    "too many wrong codes; request a new one")
            raise InvalidOtp("wrong verification code",
                             {"attemptsRemaining": remaining})

        if not await self.otps.consume(email, ch["challenge_id"]):
            raise OtpAlreadyConsumed("verification code already used")
        logger.info("otp_verified", email=email,
                    challenge_id=ch["challenge_id"])
        return {"verified": True, "email": email,
                "validFor": OTP_VERIFIED_WINDOW_SECONDS}

    async def register_friend(self, referrer_email: str,
                              friend: Dict[str, Any]) -> Registration:
        referrer_email = normalize_email(referrer_email)
        ch = await self.otps.get_challenge(referrer_email)
        if (ch is None or not ch["consumed"] or ch["consumed_at"] is None
                or ch["consumed_at"] + OTP_VERIFIED_WINDOW_SECONDS
                < now_ts()):
            raise NotEligible("verify the referrer's email first",
                              {"reasons": ["email not verified"]})

        offer = await self.offer_status()
        if not offer["enabled"]:
            raise NotEligible("friend referral offer is currently disabled",
                              {"reasons": ["offer disabled"]})
        referrer = await self.store.get_by_email(referrer_email)
        if referrer is None:
            raise NotEligible("referrer not found",
                              {"reasons": ["registration not found"]})

        person = validate_person(friend)
        phone = (friend.get("phone") or "").strip()
        if not phone:
            raise ValidationFailed("invalid registration details",
                                   {"fields": {"phone": "required"}})
        pricing = price_booking(1, friend_discount=offer["discountAmount"])

        reg = Registration(
            id=new_id(),
            phone=phone,
            payment_status=PENDING,
            payment_method=friend.get("paymentMethod") or "gateway",
            amount=pricing.amount,
            original_amount=pricing.original_amount,
            friend_discount_applied=pricing.friend_discount_applied,
            total_amount=pricing.total_amount,
            currency=pricing.currency,
            is_group_booking=False,
            ticket_quantity=1,
            is_friend_referral=True,
            referrer_id=referrer.id,
            has_referred_friend=False,
            **person,
        )
        # flag + insert in one transaction; loses cleanly to a racing twin
        await self.store.claim_referral_and_create(referrer.id, reg)
        logger.info("friend_registered", referrer_id=referrer.id,
                    registration_id=reg.id,
                    discount=pricing.friend_discount_applied)
        return await self.store.get(reg.id)
