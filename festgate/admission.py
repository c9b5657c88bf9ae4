"""Gate admission: at most one entry per ticket per event day.

The only guard is the unique (ticket_number, day) index behind
``RegistrationStore.append_if_absent``; any number of scanners may confirm
the same ticket at once and exactly one of them admits.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import orjson
import structlog

from .auth import ADMIN, SCANNER, Actor
from .config import EVENT_CODE, EVENT_DAYS
from .errors import InvalidDay, TicketNotActive, UnknownTicket
from .helpers import now_ts, to_iso, to_local_display
from .model.orm import ACTIVE_STATUSES
from .model.store import RegistrationStore, TicketHolder

logger = structlog.get_logger(__name__)

VALID = "valid"
ADMITTED = "admitted"
DUPLICATE_ENTRY = "duplicate_entry"


@dataclass
class AdmissionResult:
    outcome: str
    ticket_number: str
    day: int
    attendee: Dict[str, Any]
    entry_at: Optional[float] = None
    scanned_by: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.outcome == ADMITTED

    def to_dict(self) -> Dict[str, Any]:
        messages = {
            VALID: f"Valid ticket for day {self.day}",
            ADMITTED: f"Entry confirmed for day {self.day}",
            DUPLICATE_ENTRY: f"Already entered on day {self.day}",
        }
        return {
            "success": True,
            "outcome": self.outcome,
            "message": messages[self.outcome],
            "ticketNumber": self.ticket_number,
            "day": self.day,
            "attendee": self.attendee,
            "entryTime": to_iso(self.entry_at),
            "entryTimeDisplay": to_local_display(self.entry_at),
            "scannedBy": self.scanned_by,
        }


def check_day(day: Any) -> int:
    if isinstance(day, str) and day.strip().isdigit():
        d = int(day)
    elif isinstance(day, int) and not isinstance(day, bool):
        d = day
    else:
        raise InvalidDay("day must be a whole number", {"day": day})
    if not 1 <= d <= EVENT_DAYS:
        raise InvalidDay(f"day must be between 1 and {EVENT_DAYS}",
                         {"day": day})
    return d


def parse_qr(qr_data: Any) -> Tuple[str, Optional[str]]:
    """Returns (ticket_number, registration_id or None)."""
    if not isinstance(qr_data, str) or not qr_data.strip():
        raise UnknownTicket("empty QR code")
    raw = qr_data.strip()
    if not raw.startswith("{"):
        if any(c.isspace() for c in raw):
            raise UnknownTicket("unreadable QR code")
        return raw, None
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        raise UnknownTicket("unreadable QR code")
    if not isinstance(data, dict):
        raise UnknownTicket("unreadable QR code")
    ticket = data.get("ticketNumber")
    if not ticket or not isinstance(ticket, str):
        raise UnknownTicket("QR code carries no ticket number")
    if data.get("eventCode") != EVENT_CODE:
        raise UnknownTicket("ticket is for a different event",
                            {"eventCode": data.get("eventCode")})
    reg_id = data.get("registrationId")
    return ticket, (reg_id if isinstance(reg_id, str) else None)


class AdmissionController:
    def __init__(self, store: RegistrationStore) -> None:
        self.store = store

    async def _lookup(self, ticket_number: str,
                      registration_id: Optional[str] = None) -> TicketHolder:
        holder = await self.store.find_ticket(ticket_number)
        if holder is None:
            raise UnknownTicket("ticket not found",
                                {"ticketNumber": ticket_number})
        if registration_id and registration_id != holder.registration.id:
            raise UnknownTicket("ticket does not match its registration",
                                {"ticketNumber": ticket_number})
        status = holder.registration.payment_status
        if status not in ACTIVE_STATUSES:
            raise TicketNotActive("ticket is not active",
                                  {"ticketNumber": ticket_number,
                                   "paymentStatus": status})
        return holder

    async def verify(self, qr_data: Any, day: Any,
                     actor: Actor) -> AdmissionResult:
        actor.require(SCANNER, ADMIN)
        d = check_day(day)
        ticket, reg_id = parse_qr(qr_data)
        holder = await self._lookup(ticket, reg_id)
        entry = await self.store.find_entry(ticket, d)
        if entry is not None:
            return AdmissionResult(
                outcome=DUPLICATE_ENTRY, ticket_number=ticket, day=d,
                attendee=holder.attendee(), entry_at=entry["entry_at"],
                scanned_by=entry["scanned_by"],
            )
        return AdmissionResult(outcome=VALID, ticket_number=ticket, day=d,
                               attendee=holder.attendee())

    async def confirm(self, ticket_number: Any, day: Any, actor: Actor,
                      member_ref: Optional[str] = None) -> AdmissionResult:
        actor.require(SCANNER, ADMIN)
        d = check_day(day)
        ticket, reg_id = parse_qr(ticket_number)
        holder = await self._lookup(ticket, reg_id)
        if member_ref is not None:
            owner = holder.member.id if holder.member else None
            if member_ref != owner:
                raise UnknownTicket("ticket does not belong to that attendee",
                                    {"ticketNumber": ticket})

        reg = holder.registration
        src = holder.member if holder.member is not None else reg
        inserted, entry = await self.store.append_if_absent(ticket, d, {
            "registration_id": reg.id,
            "member_id": holder.member.id if holder.member else None,
            "attendee_name": src.name,
            "attendee_email": src.email,
            "attendee_college": src.college,
            "attendee_year": src.year,
            "booking_email": reg.email,
            "entry_at": now_ts(),
            "scanned_by": actor.username,
        })
        outcome = ADMITTED if inserted else DUPLICATE_ENTRY
        logger.info("entry_admitted" if inserted else "duplicate_entry",
                    ticket_number=ticket, day=d, scanner=actor.username,
                    entry_at=entry["entry_at"])
        return AdmissionResult(
            outcome=outcome, ticket_number=ticket, day=d,
            attendee=holder.attendee(), entry_at=entry["entry_at"],
            scanned_by=entry["scanned_by"],
        )

    async def day_stats(self, actor: Actor) -> Dict[str, Any]:
        actor.require(SCANNER, ADMIN)
        stats = await self.store.day_stats(EVENT_DAYS)
        stats["eventDays"] = EVENT_DAYS
        return stats
