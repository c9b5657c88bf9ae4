"""Registration store.

Every mutation of a registration is a single conditional statement
("move from expected state X to Y"), and every uniqueness guarantee is a
unique index. Nothing here takes an in-process lock: several API workers
(admin, gate, public) may run against the same database at once.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import select, update, delete, func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateKey, NotEligible, NotFound, StaleState
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import Database
from ..infra.timings import timeit
from .orm import (
    Base, Registration, GroupMember, IssuedTicket, EventEntry, Setting,
    ACTIVE_STATUSES, PAYMENT_STATUSES, DEFAULT_SETTINGS,
)

logger = structlog.get_logger(__name__)


@dataclass
class TicketHolder:
    registration: Registration
    member: Optional[GroupMember] = None

    @property
    def ticket_number(self) -> str:
        if self.member is not None:
            return self.member.ticket_number
        return self.registration.ticket_number

    def attendee(self) -> Dict[str, Any]:
        src = self.member if self.member is not None else self.registration
        return {
            "name": src.name,
            "email": src.email,
            "college": src.college,
            "year": src.year,
            "ticketNumber": self.ticket_number,
            "isGroupMember": self.member is not None,
            "groupMemberId": self.member.id if self.member else None,
            "bookingEmail": self.registration.email,
            "registrationId": self.registration.id,
        }


class RegistrationStore:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.gated = db.gated

    def _session(self) -> AsyncSession:
        return self.db.sessions()

    # ------------------------------------------------------------------
    # schema
    # ------------------------------------------------------------------
    async def create_schema(self) -> None:
        async with self.db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        for key, (value, description) in DEFAULT_SETTINGS.items():
            try:
                async with self._session() as s:
                    async with s.begin():
                        if await s.get(Setting, key) is None:
                            s.add(Setting(
                                key=key, value=value,
                                description=description,
                                modified_by="system",
                                modified_at=now_ts(),
                            ))
            except IntegrityError:
                # another worker seeded it first
                pass

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def find(self, reg_id: str) -> Optional[Registration]:
        async with timeit("store.get"):
            async with self.gated():
                async with self._session() as s:
                    return await s.get(Registration, reg_id)

    async def get(self, reg_id: str) -> Registration:
        reg = await self.find(reg_id)
        if reg is None:
            raise NotFound("registration not found")
        return reg

    async def _find_by(self, *criteria) -> Optional[Registration]:
        async with self.gated():
            async with self._session() as s:
                return (await s.execute(
                    select(Registration).where(*criteria)
                )).scalars().first()

    async def get_by_email(self, email: str) -> Optional[Registration]:
        return await self._find_by(Registration.email == email)

    async def get_by_order_id(self, order_id: str) -> Optional[Registration]:
        return await self._find_by(Registration.gateway_order_id == order_id)

    async def find_ticket(self, ticket_number: str) -> Optional[TicketHolder]:
        async with timeit("store.find_ticket"):
            async with self.gated():
                async with self._session() as s:
                    issued = await s.get(IssuedTicket, ticket_number)
                    if issued is None:
                        return None
                    reg = await s.get(Registration, issued.registration_id)
                    if reg is None:
                        return None
        member = None
        if issued.member_id is not None:
            member = next(
                (m for m in reg.group_members if m.id == issued.member_id),
                None,
            )
            if member is None:
                return None
        return TicketHolder(registration=reg, member=member)

    async def find_entry(
        self, ticket_number: str, day: int
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self._session() as s:
                row = (await s.execute(text("""
                    SELECT * FROM event_entries
                    WHERE ticket_number = :t AND day = :d
                """), {"t": ticket_number, "d": day})).mappings().first()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    async def create(self, reg: Registration,
                     members: Iterable[GroupMember] = ()) -> str:
        ts = now_ts()
        reg.id = reg.id or new_id()
        reg.created_at = ts
        reg.updated_at = ts
        try:
            async with timeit("store.create"):
                async with self.gated():
                    async with self._session() as s:
                        async with s.begin():
                            s.add(reg)
                            for m in members:
                                m.registration_id = reg.id
                                s.add(m)
        except IntegrityError:
            raise DuplicateKey("email", "email already registered")
        return reg.id

    async def conditional_update(
        self,
        reg_id: str,
        expected: str | Tuple[str, ...],
        mutation: Dict[str, Any],
        **where: Any,
    ) -> Registration:
        """Apply ``mutation`` only if the stored payment_status is one of
        ``expected`` (and every extra ``where`` column matches; ``None``
        means IS NULL). Raises StaleState otherwise, never retries."""
        states = (expected,) if isinstance(expected, str) else tuple(expected)
        values = dict(mutation)
        values.setdefault("updated_at", now_ts())

        stmt = (
            update(Registration)
            .where(Registration.id == reg_id)
            .where(Registration.payment_status.in_(states))
        )
        for col, val in where.items():
            c = getattr(Registration, col)
            stmt = stmt.where(c.is_(None) if val is None else c == val)
        stmt = stmt.values(**values).execution_options(
            synchronize_session=False
        )

        async with timeit("store.conditional_update"):
            async with self.gated():
                async with self._session() as s:
                    async with s.begin():
                        res = await s.execute(stmt)
                        if res.rowcount == 1:
                            return await s.get(Registration, reg_id)
                        current = await s.scalar(
                            select(Registration.payment_status)
                            .where(Registration.id == reg_id)
                        )
        if current is None:
            raise NotFound("registration not found")
        raise StaleState(expected=list(states), actual=current)

    async def set_fields(self, reg_id: str, mutation: Dict[str, Any]) -> None:
        # bookkeeping columns only (notification_error etc.), never status
        if "payment_status" in mutation:
            raise ValueError("set_fields cannot change payment_status; "
                             "use conditional_update")
        values = dict(mutation)
        values.setdefault("updated_at", now_ts())
        async with self.gated():
            async with self._session() as s:
                async with s.begin():
                    await s.execute(
                        update(Registration)
                        .where(Registration.id == reg_id)
                        .values(**values)
                    )

    async def replace_group_members(
        self, reg_id: str, expected: str, members: List[GroupMember]
    ) -> Registration:
        async with self.gated():
            async with self._session() as s:
                async with s.begin():
                    # touching the row first takes the row lock and pins the
                    # state for the rest of the transaction
                    res = await s.execute(
                        update(Registration)
                        .where(Registration.id == reg_id)
                        .where(Registration.payment_status == expected)
                        .values(updated_at=now_ts())
                    )
                    if res.rowcount != 1:
                        current = await s.scalar(
                            select(Registration.payment_status)
                            .where(Registration.id == reg_id)
                        )
                        if current is None:
                            raise NotFound("registration not found")
                        raise StaleState(expected=[expected], actual=current)
                    await s.execute(
                        delete(GroupMember)
                        .where(GroupMember.registration_id == reg_id)
                    )
                    for m in members:
                        m.registration_id = reg_id
                        s.add(m)
        return await self.get(reg_id)

    async def issue_ticket(
        self, reg_id: str, member_id: Optional[str], ticket_number: str
    ) -> bool:
        """Stamp ``ticket_number`` on a seat that has none yet.

        Returns False if the seat already carries a number. Raises
        DuplicateKey('ticket_number') if the number was handed out before.
        """
        if member_id is None:
            stamp = (
                update(Registration)
                .where(Registration.id == reg_id)
                .where(Registration.ticket_number.is_(None))
                .values(ticket_number=ticket_number, updated_at=now_ts())
            )
        else:
            stamp = (
                update(GroupMember)
                .where(GroupMember.id == member_id)
                .where(GroupMember.registration_id == reg_id)
                .where(GroupMember.ticket_number.is_(None))
                .values(ticket_number=ticket_number)
            )
        try:
            async with timeit("store.issue_ticket"):
                async with self.gated():
                    async with self._session() as s:
                        async with s.begin():
                            res = await s.execute(stamp)
                            if res.rowcount != 1:
                                return False
                            s.add(IssuedTicket(
                                ticket_number=ticket_number,
                                registration_id=reg_id,
                                member_id=member_id,
                                issued_at=now_ts(),
                            ))
                            await s.flush()
        except IntegrityError:
            raise DuplicateKey("ticket_number")
        return True

    async def append_if_absent(
        self, ticket_number: str, day: int, record: Dict[str, Any]
    ) -> Tuple[bool, Dict[str, Any]]:
        """Insert-if-absent on the (ticket_number, day) unique index.

        Returns (True, new_entry) for the single winner, (False,
        existing_entry) for everybody else.
        """
        params = {
            "id": new_id(),
            "registration_id": record["registration_id"],
            "ticket_number": ticket_number,
            "day": day,
            "member_id": record.get("member_id"),
            "attendee_name": record["attendee_name"],
            "attendee_email": record["attendee_email"],
            "attendee_college": record.get("attendee_college"),
            "attendee_year": record.get("attendee_year"),
            "booking_email": record.get("booking_email"),
            "entry_at": record.get("entry_at") or now_ts(),
            "scanned_by": record.get("scanned_by"),
        }
        async with timeit("store.append_entry"):
            async with self.gated():
                async with self._session() as s:
                    async with s.begin():
                        row = (await s.execute(text("""
                          INSERT INTO event_entries(
                            id, registration_id, ticket_number, day,
                            member_id, attendee_name, attendee_email,
                            attendee_college, attendee_year, booking_email,
                            entry_at, scanned_by
                          ) VALUES (
                            :id, :registration_id, :ticket_number, :day,
                            :member_id, :attendee_name, :attendee_email,
                            :attendee_college, :attendee_year,
                            :booking_email, :entry_at, :scanned_by
                          )
                          ON CONFLICT (ticket_number, day) DO NOTHING
                          RETURNING id
                        """), params)).first()
        if row is not None:
            return True, params

        existing = await self.find_entry(ticket_number, day)
        if existing is None:
            # conflict row vanished; entries are append-only so this means
            # the store is being tampered with out of band
            raise StaleState(message="admission record disappeared")
        return False, existing

    async def claim_referral_and_create(
        self, referrer_id: str, friend: Registration
    ) -> Registration:
        """Flip the referrer's 'referral used' flag and insert the friend's
        registration in one transaction; either both land or neither."""
        ts = now_ts()
        friend.id = friend.id or new_id()
        friend.created_at = ts
        friend.updated_at = ts
        try:
            async with timeit("store.claim_referral"):
                async with self.gated():
                    async with self._session() as s:
                        async with s.begin():
                            res = await s.execute(
                                update(Registration)
                                .where(Registration.id == referrer_id)
                                .where(Registration.has_referred_friend
                                       .is_(False))
                                .where(Registration.payment_status
                                       .in_(ACTIVE_STATUSES))
                                .where(Registration.is_group_booking
                                       .is_(False))
                                .where(Registration.is_friend_referral
                                       .is_(False))
                                .values(has_referred_friend=True,
                                        updated_at=ts)
                            )
                            if res.rowcount != 1:
                                raise NotEligible(
                                    "referrer is no longer eligible",
                                    {"reasons": ["referral already used"]},
                                )
                            s.add(friend)
                            await s.flush()
        except IntegrityError:
            raise DuplicateKey("email", "friend email already registered")
        return friend

    async def delete(self, reg_id: str, allowed: Tuple[str, ...]) -> None:
        async with self.gated():
            async with self._session() as s:
                async with s.begin():
                    reg = await s.get(Registration, reg_id)
                    if reg is None:
                        raise NotFound("registration not found")
                    if reg.payment_status not in allowed:
                        raise StaleState(
                            expected=list(allowed),
                            actual=reg.payment_status,
                            message="only unpaid registrations can be "
                                    "deleted",
                        )
                    await s.delete(reg)

    # ------------------------------------------------------------------
    # listings & statistics (admin)
    # ------------------------------------------------------------------
    async def list_registrations(
        self,
        *,
        payment_status: Optional[str] = None,
        year: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        newest_first: bool = True,
    ) -> Tuple[int, List[Registration]]:
        crit = []
        if payment_status:
            crit.append(Registration.payment_status == payment_status)
        if year:
            crit.append(Registration.year == year)
        if search:
            like = f"%{search.lower()}%"
            crit.append(or_(
                func.lower(Registration.name).like(like),
                func.lower(Registration.email).like(like),
                func.lower(Registration.college).like(like),
                Registration.ticket_number == search,
            ))
        order = (Registration.created_at.desc() if newest_first
                 else Registration.created_at.asc())
        limit = max(1, min(limit, 500))
        page = max(1, page)
        async with self.gated():
            async with self._session() as s:
                total = await s.scalar(
                    select(func.count()).select_from(Registration).where(*crit)
                )
                rows = (await s.execute(
                    select(Registration).where(*crit).order_by(order)
                    .offset((page - 1) * limit).limit(limit)
                )).scalars().all()
        return int(total or 0), list(rows)

    async def list_entries(
        self,
        *,
        day: Optional[int] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[int, List[EventEntry]]:
        """Gate log, most recent scan first."""
        crit = []
        if day is not None:
            crit.append(EventEntry.day == day)
        if search:
            like = f"%{search.lower()}%"
            crit.append(or_(
                func.lower(EventEntry.attendee_name).like(like),
                func.lower(EventEntry.attendee_email).like(like),
                func.lower(EventEntry.attendee_college).like(like),
                func.lower(EventEntry.booking_email).like(like),
                EventEntry.ticket_number == search,
            ))
        limit = max(1, min(limit, 500))
        page = max(1, page)
        async with self.gated():
            async with self._session() as s:
                total = await s.scalar(
                    select(func.count()).select_from(EventEntry).where(*crit)
                )
                rows = (await s.execute(
                    select(EventEntry).where(*crit)
                    .order_by(EventEntry.entry_at.desc())
                    .offset((page - 1) * limit).limit(limit)
                )).scalars().all()
        return int(total or 0), list(rows)

    async def recipients(
        self, payment_status: Optional[str] = None
    ) -> List[Tuple[str, str]]:
        """(name, email) of every booking holder, optionally by status."""
        stmt = select(Registration.name, Registration.email)
        if payment_status:
            stmt = stmt.where(Registration.payment_status == payment_status)
        async with self.gated():
            async with self._session() as s:
                rows = (await s.execute(
                    stmt.order_by(Registration.created_at.asc())
                )).all()
        return [(r[0], r[1]) for r in rows]

    async def dashboard_stats(self) -> Dict[str, Any]:
        async with self.gated():
            async with self._session() as s:
                by_status = dict((await s.execute(
                    select(Registration.payment_status, func.count())
                    .group_by(Registration.payment_status)
                )).all())
                by_year = dict((await s.execute(
                    select(Registration.year, func.count())
                    .group_by(Registration.year)
                )).all())
                revenue = await s.scalar(
                    select(func.coalesce(func.sum(Registration.total_amount),
                                         0))
                    .where(Registration.payment_status.in_(ACTIVE_STATUSES))
                )
                seats = await s.scalar(select(func.count()).select_from(
                    IssuedTicket))
        return {
            "totalRegistrations": sum(by_status.values()),
            "byStatus": {k: int(by_status.get(k, 0))
                         for k in PAYMENT_STATUSES},
            "byYear": {k: int(v) for k, v in by_year.items()},
            "totalRevenue": int(revenue or 0),
            "ticketsIssued": int(seats or 0),
        }

    async def day_stats(self, days: int) -> Dict[str, Any]:
        async with self.gated():
            async with self._session() as s:
                per_day = dict((await s.execute(
                    select(EventEntry.day, func.count())
                    .group_by(EventEntry.day)
                )).all())
                unique = await s.scalar(
                    select(func.count(func.distinct(EventEntry.ticket_number)))
                )
                every_day = (await s.execute(
                    select(EventEntry.ticket_number)
                    .group_by(EventEntry.ticket_number)
                    .having(func.count(func.distinct(EventEntry.day)) >= days)
                )).scalars().all()
        return {
            "days": {str(d): int(per_day.get(d, 0))
                     for d in range(1, days + 1)},
            "totalUniqueAttendees": int(unique or 0),
            "allDaysAttendees": len(every_day),
        }

    # ------------------------------------------------------------------
    # settings
    # ------------------------------------------------------------------
    async def get_setting(self, key: str) -> Any:
        async with self.gated():
            async with self._session() as s:
                row = await s.get(Setting, key)
        if row is None:
            default = DEFAULT_SETTINGS.get(key)
            return default[0] if default else None
        return row.value

    async def all_settings(self) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self._session() as s:
                rows = (await s.execute(select(Setting))).scalars().all()
        return [{
            "key": r.key,
            "value": r.value,
            "description": r.description,
            "modifiedBy": r.modified_by,
            "modifiedAt": to_iso(r.modified_at),
        } for r in rows]

    async def set_setting(self, key: str, value: Any, modified_by: str) -> None:
        if key not in DEFAULT_SETTINGS:
            raise NotFound(f"unknown setting {key}")
        async with self.gated():
            async with self._session() as s:
                async with s.begin():
                    row = await s.get(Setting, key)
                    if row is None:
                        row = Setting(
                            key=key, description=DEFAULT_SETTINGS[key][1]
                        )
                        s.add(row)
                    row.value = value
                    row.modified_by = modified_by
                    row.modified_at = now_ts()


# ----------------------------
# API views
# ----------------------------
def member_view(m: GroupMember) -> Dict[str, Any]:
    return {
        "id": m.id,
        "position": m.position,
        "name": m.name,
        "email": m.email,
        "college": m.college,
        "year": m.year,
        "ticketNumber": m.ticket_number,
    }


def registration_view(reg: Registration,
                      include_proof: bool = False) -> Dict[str, Any]:
    out = {
        "id": reg.id,
        "name": reg.name,
        "email": reg.email,
        "phone": reg.phone,
        "college": reg.college,
        "year": reg.year,
        "paymentStatus": reg.payment_status,
        "paymentMethod": reg.payment_method,
        "amount": reg.amount,
        "originalAmount": reg.original_amount,
        "friendDiscountApplied": reg.friend_discount_applied,
        "totalAmount": reg.total_amount,
        "currency": reg.currency,
        "isGroupBooking": reg.is_group_booking,
        "ticketQuantity": reg.ticket_quantity,
        "groupMembers": [member_view(m) for m in reg.group_members],
        "isFriendReferral": reg.is_friend_referral,
        "referrerId": reg.referrer_id,
        "ticketNumber": reg.ticket_number,
        "gatewayOrderId": reg.gateway_order_id,
        "rejectionReason": reg.rejection_reason,
        "paymentSubmittedAt": to_iso(reg.payment_submitted_at),
        "verifiedAt": to_iso(reg.verified_at),
        "emailSentAt": to_iso(reg.email_sent_at),
        "ticketPending": (reg.payment_status == "verified"
                          and reg.email_sent_at is None),
        "createdAt": to_iso(reg.created_at),
    }
    if include_proof:
        out.update({
            "upiTransactionId": reg.upi_transaction_id,
            "paymentScreenshot": reg.payment_screenshot,
            "gatewayPaymentId": reg.gateway_payment_id,
            "adminNotes": reg.admin_notes,
            "verifiedBy": reg.verified_by,
            "notificationError": reg.notification_error,
            "hasReferredFriend": reg.has_referred_friend,
        })
    return out


def entry_view(e: EventEntry) -> Dict[str, Any]:
    return {
        "ticketNumber": e.ticket_number,
        "day": e.day,
        "name": e.attendee_name,
        "email": e.attendee_email,
        "college": e.attendee_college,
        "year": e.attendee_year,
        "isGroupMember": e.member_id is not None,
        "bookingEmail": e.booking_email,
        "registrationId": e.registration_id,
        "entryTime": to_iso(e.entry_at),
        "scannedBy": e.scanned_by,
    }
