"""Payment verification workflow.

    pending --gateway success--> verified --tickets+email--> completed
    pending --manual proof--> paid_awaiting_verification
    paid_awaiting_verification --approve--> verified --> completed
    paid_awaiting_verification --reject(reason)--> pending
    pending --gateway failure--> failed --retry--> pending

Each arrow is one ``conditional_update`` on the registration row. A lost
race surfaces as StaleState (or AlreadySubmitted where the caller is the
registrant) and is never retried here.
"""
from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from .allocator import (
    assign_ticket_numbers, check_group_details, price_booking, seat_plan,
)
from .auth import ADMIN, Actor
from .config import YEARS
from .errors import (
    AlreadySubmitted, IncompleteGroupDetails, MissingPaymentProof,
    NotFound, NotificationFailed, RejectionReasonRequired, SignatureInvalid,
    StaleState, ValidationFailed,
)
from .gateway import PaymentGateway
from .helpers import is_valid_email, new_id, normalize_email, now_ts
from .model.orm import (
    Registration, GroupMember,
    PENDING, PAID_AWAITING_VERIFICATION, VERIFIED, COMPLETED, FAILED,
)
from .model.store import RegistrationStore
from .notifier import Notifier, SendResult

logger = structlog.get_logger(__name__)

GATEWAY_SETTLEABLE = (PENDING, FAILED)
BULK_TARGETS = ("all", PENDING, COMPLETED, FAILED)


def _require_text(data: Dict[str, Any], key: str, errors: Dict[str, str]):
    value = (data.get(key) or "").strip()
    if not value:
        errors[key] = "required"
    return value


def validate_person(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    errors: Dict[str, str] = {}
    out = {
        "name": _require_text(data, "name", errors),
        "email": normalize_email(data.get("email")),
        "college": _require_text(data, "college", errors),
        "year": (data.get("year") or "").strip(),
    }
    if not is_valid_email(out["email"]):
        errors["email"] = "invalid email address"
    if out["year"] not in YEARS:
        errors["year"] = f"must be one of {', '.join(YEARS)}"
    if errors:
        raise ValidationFailed(
            "invalid registration details",
            {"fields": {f"{prefix}{k}": v for k, v in errors.items()}},
        )
    return out


def build_members(members: Sequence[Dict[str, Any]]) -> List[GroupMember]:
    rows = []
    for i, m in enumerate(members):
        p = validate_person(m, prefix=f"groupMembers[{i}].")
        rows.append(GroupMember(id=new_id(), position=i + 1, **p))
    return rows


def ticket_seats(reg: Registration) -> List[Dict[str, Any]]:
    seats = [{
        "ticketNumber": reg.ticket_number,
        "registrationId": reg.id,
        "name": reg.name,
        "email": reg.email,
    }]
    for m in reg.group_members:
        seats.append({
            "ticketNumber": m.ticket_number,
            "registrationId": reg.id,
            "name": m.name,
            "email": m.email,
        })
    return [s for s in seats if s["ticketNumber"]]


class PaymentWorkflow:
    def __init__(self, store: RegistrationStore, gateway: PaymentGateway,
                 notifier: Notifier) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier

    async def _notify(self, reg_id: Optional[str],
                      send: Callable[..., Awaitable[SendResult]],
                      *args: Any) -> SendResult:
        # the state transition has already committed; a crashing sender
        # must end up as a recorded failure, not a 500
        try:
            return await send(*args)
        except Exception as exc:
            logger.exception("notification_crashed", registration_id=reg_id)
            return SendResult(sent=False,
                              reason=f"{type(exc).__name__}: {exc}")

    # ------------------------------------------------------------------
    # registrant
    # ------------------------------------------------------------------
    async def create_registration(self, data: Dict[str, Any]) -> Registration:
        person = validate_person(data)
        phone = (data.get("phone") or "").strip()
        if not phone:
            raise ValidationFailed("invalid registration details",
                                   {"fields": {"phone": "required"}})
        quantity = data.get("ticketQuantity", 1)
        plan = seat_plan(quantity)
        pricing = price_booking(quantity)

        members = build_members(data.get("groupMembers") or [])
        if len(members) > plan.members_required:
            raise IncompleteGroupDetails(
                "more group members than seats",
                {"expected": plan.members_required,
                 "received": len(members)},
            )

        reg = Registration(
            id=new_id(),
            phone=phone,
            payment_status=PENDING,
            payment_method=data.get("paymentMethod") or "gateway",
            amount=pricing.amount,
            original_amount=pricing.original_amount,
            friend_discount_applied=0,
            total_amount=pricing.total_amount,
            currency=pricing.currency,
            is_group_booking=quantity > 1,
            ticket_quantity=quantity,
            is_friend_referral=False,
            has_referred_friend=False,
            **person,
        )
        await self.store.create(reg, members)
        logger.info("registration_created", registration_id=reg.id,
                    ticket_quantity=quantity, total_seats=plan.total,
                    total_amount=pricing.total_amount)
        return await self.store.get(reg.id)

    async def update_group_members(
        self, reg_id: str, members: Sequence[Dict[str, Any]]
    ) -> Registration:
        reg = await self.store.get(reg_id)
        plan = seat_plan(reg.ticket_quantity)
        rows = build_members(members)
        if len(rows) > plan.members_required:
            raise IncompleteGroupDetails(
                "more group members than seats",
                {"expected": plan.members_required, "received": len(rows)},
            )
        try:
            return await self.store.replace_group_members(
                reg_id, PENDING, rows
            )
        except StaleState as e:
            raise AlreadySubmitted(
                "group members can only be changed before payment",
                {"paymentStatus": e.actual},
            )

    async def submit_manual_payment(self, reg_id: str, utr: Optional[str],
                                    screenshot: Optional[str]
                                    ) -> Registration:
        utr = (utr or "").strip()
        screenshot = (screenshot or "").strip()
        missing = [k for k, v in (("upiTransactionId", utr),
                                  ("paymentScreenshot", screenshot)) if not v]
        if missing:
            raise MissingPaymentProof("payment proof is incomplete",
                                      {"missing": missing})

        reg = await self.store.get(reg_id)
        if reg.payment_status != PENDING:
            raise AlreadySubmitted("payment already submitted",
                                   {"paymentStatus": reg.payment_status})
        check_group_details(reg.ticket_quantity, reg.group_members)

        try:
            reg = await self.store.conditional_update(reg_id, PENDING, {
                "payment_status": PAID_AWAITING_VERIFICATION,
                "payment_method": "upi",
                "upi_transaction_id": utr,
                "payment_screenshot": screenshot,
                "payment_submitted_at": now_ts(),
                "rejection_reason": None,
            })
        except StaleState as e:
            raise AlreadySubmitted("payment already submitted",
                                   {"paymentStatus": e.actual})
        logger.info("manual_payment_submitted", registration_id=reg_id,
                    upi_transaction_id=utr)
        return reg

    # ------------------------------------------------------------------
    # admin review
    # ------------------------------------------------------------------
    async def approve(self, reg_id: str, actor: Actor,
                      notes: Optional[str] = None) -> Registration:
        actor.require(ADMIN)
        await self.store.conditional_update(
            reg_id, PAID_AWAITING_VERIFICATION, {
                "payment_status": VERIFIED,
                "verified_at": now_ts(),
                "verified_by": actor.username,
                "admin_notes": notes,
            })
        logger.info("payment_approved", registration_id=reg_id,
                    admin=actor.username)
        return await self.finalize(reg_id)

    async def reject(self, reg_id: str, actor: Actor,
                     reason: Optional[str],
                     notes: Optional[str] = None) -> Registration:
        actor.require(ADMIN)
        reason = (reason or "").strip()
        if not reason:
            raise RejectionReasonRequired("a rejection reason is required")
        reg = await self.store.conditional_update(
            reg_id, PAID_AWAITING_VERIFICATION, {
                "payment_status": PENDING,
                "upi_transaction_id": None,
                "payment_screenshot": None,
                "payment_submitted_at": None,
                "rejection_reason": reason,
                "admin_notes": notes,
                "verified_by": actor.username,
            })
        logger.info("payment_rejected", registration_id=reg_id,
                    admin=actor.username, reason=reason)

        result = await self._notify(reg_id, self.notifier.send_rejection,
                                    reg.email, reg.name, reason)
        if not result.sent:
            logger.warning("rejection_notice_failed",
                           registration_id=reg_id, reason=result.reason)
            await self.store.set_fields(
                reg_id, {"notification_error": result.reason})
            return await self.store.get(reg_id)
        return reg

    async def set_payment_status(self, reg_id: str, actor: Actor,
                                 status: str) -> Registration:
        actor.require(ADMIN)
        if status == FAILED:
            return await self.mark_failed(reg_id)
        if status == PENDING:
            return await self.retry(reg_id)
        raise ValidationFailed(
            "status must be 'failed' or 'pending'",
            {"fields": {"paymentStatus": "invalid"}},
        )

    async def resend_ticket(self, reg_id: str, actor: Actor) -> Registration:
        actor.require(ADMIN)
        reg = await self.store.get(reg_id)
        if reg.payment_status == VERIFIED:
            reg = await self.finalize(reg_id, force=True)
            if reg.payment_status != COMPLETED:
                raise NotificationFailed(
                    "ticket email could not be sent",
                    {"reason": reg.notification_error},
                )
            return reg
        if reg.payment_status != COMPLETED:
            raise StaleState(expected=[VERIFIED, COMPLETED],
                             actual=reg.payment_status,
                             message="tickets exist only for paid "
                                     "registrations")
        result = await self._notify(reg_id, self.notifier.send_ticket,
                                    reg.email, reg.name, ticket_seats(reg))
        if not result.sent:
            await self.store.set_fields(
                reg_id, {"notification_error": result.reason})
            raise NotificationFailed("ticket email could not be sent",
                                     {"reason": result.reason})
        await self.store.set_fields(reg_id, {"email_sent_at": now_ts(),
                                             "notification_error": None})
        logger.info("ticket_resent", registration_id=reg_id,
                    admin=actor.username)
        return await self.store.get(reg_id)

    # ------------------------------------------------------------------
    # gateway
    # ------------------------------------------------------------------
    async def create_gateway_order(self, reg_id: str) -> Dict[str, Any]:
        reg = await self.store.get(reg_id)
        if reg.payment_status != PENDING:
            raise AlreadySubmitted("payment already submitted",
                                   {"paymentStatus": reg.payment_status})
        check_group_details(reg.ticket_quantity, reg.group_members)

        if reg.gateway_order_id is None:
            order = await self.gateway.create_order(
                reg.total_amount, reg.currency, receipt=reg.id,
                notes={"email": reg.email},
            )
            try:
                reg = await self.store.conditional_update(
                    reg_id, PENDING,
                    {"gateway_order_id": order["id"],
                     "payment_method": "gateway"},
                    gateway_order_id=None,
                )
                logger.info("gateway_order_created", registration_id=reg_id,
                            order_id=order["id"], amount=reg.total_amount)
            except StaleState:
                # a concurrent request attached its order first; use that
                reg = await self.store.get(reg_id)
                if reg.payment_status != PENDING or not reg.gateway_order_id:
                    raise AlreadySubmitted(
                        "payment already submitted",
                        {"paymentStatus": reg.payment_status},
                    )
        return {
            "orderId": reg.gateway_order_id,
            "amount": reg.total_amount,
            "currency": reg.currency,
            "keyId": self.gateway.key_id,
            "registrationId": reg.id,
        }

    async def confirm_gateway_payment(self, order_id: str, payment_id: str,
                                      signature: str) -> Registration:
        if not self.gateway.verify_payment_signature(order_id, payment_id,
                                                     signature):
            logger.warning("payment_signature_invalid", order_id=order_id,
                           payment_id=payment_id)
            raise SignatureInvalid("payment signature mismatch")
        reg = await self.store.get_by_order_id(order_id)
        if reg is None:
            raise NotFound("order not found")
        if reg.payment_status in GATEWAY_SETTLEABLE:
            check_group_details(reg.ticket_quantity, reg.group_members)
        return await self.apply_gateway_success(order_id, payment_id)

    async def apply_gateway_success(self, order_id: str,
                                    payment_id: Optional[str]
                                    ) -> Registration:
        reg = await self.store.get_by_order_id(order_id)
        if reg is None:
            raise NotFound("order not found")
        try:
            await self.store.conditional_update(
                reg.id, GATEWAY_SETTLEABLE, {
                    "payment_status": VERIFIED,
                    "payment_method": "gateway",
                    "gateway_payment_id": payment_id,
                    "verified_at": now_ts(),
                    "verified_by": self.gateway.name,
                    "rejection_reason": None,
                })
        except StaleState:
            reg = await self.store.get(reg.id)
            if reg.gateway_payment_id != payment_id:
                raise
            # replay of a success we already applied
            logger.info("gateway_success_replayed", order_id=order_id,
                        payment_status=reg.payment_status)
            if reg.payment_status == VERIFIED:
                return await self.finalize(reg.id)
            return reg
        logger.info("gateway_payment_confirmed", registration_id=reg.id,
                    order_id=order_id, payment_id=payment_id)
        return await self.finalize(reg.id)

    async def mark_failed(self, reg_id: str) -> Registration:
        reg = await self.store.conditional_update(
            reg_id, PENDING, {"payment_status": FAILED}
        )
        logger.info("payment_failed", registration_id=reg_id)
        return reg

    async def retry(self, reg_id: str) -> Registration:
        reg = await self.store.conditional_update(
            reg_id, FAILED, {"payment_status": PENDING}
        )
        logger.info("payment_retry", registration_id=reg_id)
        return reg

    async def _fail_quietly(self, reg_id: str) -> Registration:
        try:
            return await self.mark_failed(reg_id)
        except StaleState:
            # already moved on (or already failed); nothing to do
            return await self.store.get(reg_id)

    async def check_payment_status(self, order_id: str) -> Registration:
        reg = await self.store.get_by_order_id(order_id)
        if reg is None:
            raise NotFound("order not found")
        if reg.payment_status in GATEWAY_SETTLEABLE:
            status, payment_id = await self.gateway.fetch_order_status(
                order_id)
            if status == "paid":
                return await self.apply_gateway_success(order_id, payment_id)
            if status == "failed" and reg.payment_status == PENDING:
                return await self._fail_quietly(reg.id)
            return reg
        if reg.payment_status == VERIFIED:
            return await self.finalize(reg.id)
        return reg

    async def handle_webhook(self, payload: bytes,
                             headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            event = self.gateway.verify_webhook(payload, headers)
        except SignatureInvalid:
            logger.warning("webhook_signature_invalid",
                           size=len(payload or b""))
            raise
        kind = self.gateway.event_kind(event)
        order_id, payment_id = self.gateway.event_ids(event)
        if not order_id:
            raise ValidationFailed("webhook without order id")

        if kind == "captured":
            reg = await self.apply_gateway_success(order_id, payment_id)
        elif kind == "failed":
            reg = await self.store.get_by_order_id(order_id)
            if reg is None:
                raise NotFound("order not found")
            reg = await self._fail_quietly(reg.id)
        else:
            logger.info("webhook_ignored", kind=kind, order_id=order_id)
            return {"ok": True, "ignored": True, "event": kind}
        return {"ok": True, "event": kind,
                "paymentStatus": reg.payment_status}

    # ------------------------------------------------------------------
    # shared tail of both approval paths
    # ------------------------------------------------------------------
    async def finalize(self, reg_id: str, *,
                       force: bool = False) -> Registration:
        """Issue tickets and send the ticket email for a VERIFIED booking.

        Concurrent callers race for the ``notifying_at`` claim and only the
        winner sends. ``force`` takes the claim even if another caller
        holds it; the admin resend path uses it to recover a booking whose
        claimant died mid-send.
        """
        reg = await self.store.get(reg_id)
        if reg.payment_status != VERIFIED:
            return reg
        reg = await assign_ticket_numbers(self.store, reg_id)

        where = {} if force else {"notifying_at": None}
        try:
            reg = await self.store.conditional_update(
                reg_id, VERIFIED, {"notifying_at": now_ts()}, **where)
        except StaleState:
            # completed meanwhile, or another caller is sending
            return await self.store.get(reg_id)

        result = await self._notify(reg_id, self.notifier.send_ticket,
                                    reg.email, reg.name, ticket_seats(reg))
        if not result.sent:
            logger.warning("ticket_email_failed", registration_id=reg_id,
                           reason=result.reason)
            await self.store.set_fields(
                reg_id, {"notification_error": result.reason,
                         "notifying_at": None})
            return await self.store.get(reg_id)

        try:
            reg = await self.store.conditional_update(reg_id, VERIFIED, {
                "payment_status": COMPLETED,
                "email_sent_at": now_ts(),
                "notification_error": None,
                "notifying_at": None,
            })
        except StaleState:
            return await self.store.get(reg_id)
        logger.info("registration_completed", registration_id=reg_id,
                    tickets=[s["ticketNumber"] for s in ticket_seats(reg)])
        return reg

    # ------------------------------------------------------------------
    # announcements
    # ------------------------------------------------------------------
    async def send_bulk_notification(self, actor: Actor, subject: str,
                                     message: str,
                                     target_group: str = "all"
                                     ) -> Dict[str, Any]:
        actor.require(ADMIN)
        subject = (subject or "").strip()
        message = (message or "").strip()
        errors: Dict[str, str] = {}
        if not subject:
            errors["subject"] = "required"
        if not message:
            errors["message"] = "required"
        if target_group not in BULK_TARGETS:
            errors["targetGroup"] = f"must be one of {', '.join(BULK_TARGETS)}"
        if errors:
            raise ValidationFailed("invalid notification", {"fields": errors})

        status = None if target_group == "all" else target_group
        recipients = await self.store.recipients(status)
        sent, failures = 0, []
        for name, email in recipients:
            result = await self._notify(None, self.notifier.send_bulk,
                                        email, name, subject, message)
            if result.sent:
                sent += 1
            else:
                failures.append({"email": email, "reason": result.reason})
        logger.info("bulk_notification_sent", admin=actor.username,
                    target_group=target_group, sent=sent,
                    failed=len(failures))
        return {
            "targetGroup": target_group,
            "subject": subject,
            "total": len(recipients),
            "sent": sent,
            "failed": len(failures),
            "errors": failures,
        }
