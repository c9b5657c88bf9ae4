"""Seat plans, pricing and ticket numbers.

Every ``FREE_SEAT_BLOCK`` paid seats earn one free seat; the booking holder
takes the first seat and each further seat needs a named group member.
"""
from __future__ import annotations
import secrets
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from .config import (
    BASE_PRICE, CURRENCY, FREE_SEAT_BLOCK, MAX_TICKET_QUANTITY,
    TICKET_PREFIX, TICKET_SUFFIX_DIGITS, TICKET_ALLOCATION_ATTEMPTS,
)
from .errors import (
    InvalidQuantity, IncompleteGroupDetails, DuplicateKey,
    TicketAllocationExhausted,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SeatPlan:
    paid: int
    free: int
    total: int

    @property
    def members_required(self) -> int:
        return self.total - 1


@dataclass(frozen=True)
class Pricing:
    ticket_quantity: int
    amount: int
    original_amount: int
    friend_discount_applied: int
    total_amount: int
    currency: str = CURRENCY


def seat_plan(ticket_quantity: int) -> SeatPlan:
    if (not isinstance(ticket_quantity, int)
            or isinstance(ticket_quantity, bool)
            or ticket_quantity < 1
            or ticket_quantity > MAX_TICKET_QUANTITY):
        raise InvalidQuantity(
            f"ticket quantity must be between 1 and {MAX_TICKET_QUANTITY}",
            {"ticketQuantity": ticket_quantity},
        )
    free = ticket_quantity // FREE_SEAT_BLOCK
    return SeatPlan(paid=ticket_quantity, free=free,
                    total=ticket_quantity + free)


def price_booking(ticket_quantity: int,
                  friend_discount: Optional[int] = None) -> Pricing:
    if friend_discount is not None:
        # friend referrals are always a single seat
        if ticket_quantity != 1:
            raise InvalidQuantity(
                "friend referrals are single-seat bookings",
                {"ticketQuantity": ticket_quantity},
            )
        discount = max(0, min(int(friend_discount), BASE_PRICE))
        total = BASE_PRICE - discount
        return Pricing(
            ticket_quantity=1,
            amount=total,
            original_amount=BASE_PRICE,
            friend_discount_applied=discount,
            total_amount=total,
        )

    plan = seat_plan(ticket_quantity)
    amount = BASE_PRICE * plan.paid
    return Pricing(
        ticket_quantity=plan.paid,
        amount=amount,
        original_amount=amount,
        friend_discount_applied=0,
        total_amount=amount,
    )


def check_group_details(ticket_quantity: int, members: Sequence) -> None:
    plan = seat_plan(ticket_quantity)
    if len(members) != plan.members_required:
        raise IncompleteGroupDetails(
            f"{plan.members_required} group member(s) required for "
            f"{plan.total} seats",
            {"expected": plan.members_required, "received": len(members)},
        )


def generate_ticket_number() -> str:
    n = secrets.randbelow(10 ** TICKET_SUFFIX_DIGITS)
    return f"{TICKET_PREFIX}-{n:0{TICKET_SUFFIX_DIGITS}d}"


async def _issue_one(store, reg_id: str, member_id: Optional[str],
                     attempts: int) -> Optional[str]:
    for attempt in range(attempts):
        number = generate_ticket_number()
        try:
            stamped = await store.issue_ticket(reg_id, member_id, number)
        except DuplicateKey:
            logger.info("ticket_number_collision", registration_id=reg_id,
                        member_id=member_id, attempt=attempt + 1)
            continue
        return number if stamped else None
    raise TicketAllocationExhausted(
        "could not allocate a unique ticket number",
        {"registrationId": reg_id, "memberId": member_id,
         "attempts": attempts},
    )


async def assign_ticket_numbers(store, reg_id: str,
                                attempts: int = TICKET_ALLOCATION_ATTEMPTS):
    """Give every seat of ``reg_id`` a ticket number. Seats that already
    hold one are left alone, so this can be re-run after a partial
    failure. Returns the fresh registration."""
    reg = await store.get(reg_id)
    issued = []
    if reg.ticket_number is None:
        n = await _issue_one(store, reg_id, None, attempts)
        if n:
            issued.append(n)
    for m in reg.group_members:
        if m.ticket_number is None:
            n = await _issue_one(store, reg_id, m.id, attempts)
            if n:
                issued.append(n)
    if issued:
        logger.info("tickets_issued", registration_id=reg_id,
                    tickets=issued)
    return await store.get(reg_id)
