import asyncio

import orjson
import pytest

from conftest import member
from festgate import allocator
from festgate.admission import (
    ADMITTED, DUPLICATE_ENTRY, VALID, check_day, parse_qr,
)
from festgate.config import EVENT_CODE
from festgate.errors import (
    InvalidDay, TicketNotActive, Unauthorized, UnknownTicket,
)
from festgate.auth import Actor
from festgate.model.store import entry_view
from festgate.qr import ticket_payload


def qr_for(reg) -> str:
    return ticket_payload(reg.ticket_number, reg.id, reg.name, reg.email)


@pytest.mark.parametrize("day, expected", [(1, 1), (2, 2), ("2", 2),
                                           (" 1 ", 1)])
def test_check_day_accepts_event_days(day, expected) -> None:
    assert check_day(day) == expected


@pytest.mark.parametrize("day", [0, 3, -1, "x", "", None, True, 1.5])
def test_check_day_rejects_the_rest(day) -> None:
    with pytest.raises(InvalidDay):
        check_day(day)


def test_parse_qr_formats() -> None:
    assert parse_qr("ACD2026-0001") == ("ACD2026-0001", None)
    assert parse_qr("  ACD2026-0001\n") == ("ACD2026-0001", None)

    payload = ticket_payload("ACD2026-0001", "reg-1", "Asha", "a@x.com")
    assert parse_qr(payload) == ("ACD2026-0001", "reg-1")


@pytest.mark.parametrize("raw", [
    "",
    None,
    "{not json",
    "[1, 2]",
    "two words",
    orjson.dumps({"registrationId": "r"}).decode(),
    orjson.dumps({"ticketNumber": "ACD2026-0001",
                  "eventCode": "OTHER"}).decode(),
])
def test_parse_qr_rejects_garbage(raw) -> None:
    with pytest.raises(UnknownTicket):
        parse_qr(raw)


async def test_verify_is_read_only(gate, paid_registration, scanner,
                                   store) -> None:
    reg = await paid_registration()
    for _ in range(2):
        result = await gate.verify(qr_for(reg), 1, scanner)
        assert result.outcome == VALID
        assert result.attendee["email"] == reg.email
    assert await store.find_entry(reg.ticket_number, 1) is None


async def test_entry_per_day(gate, paid_registration, scanner) -> None:
    """Day 1 and day 2 are independent; each admits once."""
    reg = await paid_registration()

    first = await gate.confirm(reg.ticket_number, 1, scanner)
    assert first.outcome == ADMITTED
    assert first.scanned_by == "scanner-1"

    again = await gate.confirm(qr_for(reg), 1, scanner)
    assert again.outcome == DUPLICATE_ENTRY
    assert again.entry_at == first.entry_at

    seen = await gate.verify(reg.ticket_number, 1, scanner)
    assert seen.outcome == DUPLICATE_ENTRY
    assert seen.to_dict()["entryTime"] is not None

    day2 = await gate.confirm(reg.ticket_number, 2, scanner)
    assert day2.outcome == ADMITTED


async def test_single_ticket_across_both_days(gate, paid_registration,
                                              scanner, monkeypatch) -> None:
    """ACD2026-0001: day 1 admits, day 1 again is a duplicate that reports
    the first entry time, day 2 admits."""
    monkeypatch.setattr(allocator, "generate_ticket_number",
                        lambda: "ACD2026-0001")
    reg = await paid_registration()
    assert reg.ticket_number == "ACD2026-0001"

    first = await gate.confirm("ACD2026-0001", 1, scanner)
    assert first.outcome == ADMITTED

    again = await gate.confirm("ACD2026-0001", "1", scanner)
    assert again.outcome == DUPLICATE_ENTRY
    assert again.entry_at == first.entry_at
    assert again.to_dict()["entryTime"] == first.to_dict()["entryTime"]

    day2 = await gate.confirm("ACD2026-0001", 2, scanner)
    assert day2.outcome == ADMITTED
    assert day2.entry_at >= first.entry_at


async def test_concurrent_confirms_admit_exactly_once(
        gate, paid_registration, scanner, store) -> None:
    reg = await paid_registration()
    scanners = [Actor(username=f"gate-{i}", role=scanner.role)
                for i in range(20)]

    results = await asyncio.gather(*[
        gate.confirm(reg.ticket_number, 1, s) for s in scanners
    ])
    admitted = [r for r in results if r.outcome == ADMITTED]
    assert len(admitted) == 1
    assert all(r.outcome == DUPLICATE_ENTRY
               for r in results if r is not admitted[0])
    assert {r.entry_at for r in results} == {admitted[0].entry_at}
    assert {r.scanned_by for r in results} == {admitted[0].scanned_by}

    entry = await store.find_entry(reg.ticket_number, 1)
    assert entry["scanned_by"] == admitted[0].scanned_by


async def test_group_member_tickets_admit_their_holder(
        gate, paid_registration, scanner) -> None:
    reg = await paid_registration(
        ticketQuantity=2, groupMembers=[member(1)])
    seat = reg.group_members[0]

    result = await gate.confirm(seat.ticket_number, 1, scanner,
                                member_ref=seat.id)
    assert result.outcome == ADMITTED
    assert result.attendee["name"] == "Member 1"
    assert result.attendee["isGroupMember"] is True
    assert result.attendee["bookingEmail"] == reg.email

    # the booking holder's own ticket is a separate entry
    own = await gate.confirm(reg.ticket_number, 1, scanner)
    assert own.outcome == ADMITTED


async def test_member_ref_must_match(gate, paid_registration,
                                     scanner) -> None:
    reg = await paid_registration(
        ticketQuantity=2, groupMembers=[member(1)])
    with pytest.raises(UnknownTicket):
        await gate.confirm(reg.ticket_number, 1, scanner,
                           member_ref=reg.group_members[0].id)


async def test_unknown_and_foreign_tickets(gate, paid_registration,
                                           scanner) -> None:
    with pytest.raises(UnknownTicket):
        await gate.confirm("ACD2026-9999", 1, scanner)

    reg = await paid_registration()
    forged = orjson.dumps({"ticketNumber": reg.ticket_number,
                           "registrationId": "someone-else",
                           "eventCode": EVENT_CODE}).decode()
    with pytest.raises(UnknownTicket):
        await gate.verify(forged, 1, scanner)


async def test_inactive_ticket_is_refused(gate, paid_registration, scanner,
                                          store) -> None:
    reg = await paid_registration()
    await store.conditional_update(reg.id, reg.payment_status,
                                   {"payment_status": "failed"})
    with pytest.raises(TicketNotActive):
        await gate.confirm(reg.ticket_number, 1, scanner)
    assert await store.find_entry(reg.ticket_number, 1) is None


async def test_bad_day_writes_nothing(gate, paid_registration, scanner,
                                      store) -> None:
    reg = await paid_registration()
    with pytest.raises(InvalidDay):
        await gate.confirm(reg.ticket_number, 3, scanner)
    assert await store.find_entry(reg.ticket_number, 3) is None


async def test_only_gate_staff_scan(gate, paid_registration) -> None:
    reg = await paid_registration()
    visitor = Actor(username="someone", role="attendee")
    with pytest.raises(Unauthorized):
        await gate.confirm(reg.ticket_number, 1, visitor)


async def test_day_stats(gate, paid_registration, scanner) -> None:
    a = await paid_registration(email="a@example.com")
    b = await paid_registration(email="b@example.com")
    await gate.confirm(a.ticket_number, 1, scanner)
    await gate.confirm(a.ticket_number, 2, scanner)
    await gate.confirm(b.ticket_number, 1, scanner)
    await gate.confirm(b.ticket_number, 1, scanner)

    stats = await gate.day_stats(scanner)
    assert stats["days"] == {"1": 2, "2": 1}
    assert stats["totalUniqueAttendees"] == 2
    assert stats["allDaysAttendees"] == 1
    assert stats["eventDays"] == 2


async def test_entry_log_filters_and_pages(gate, paid_registration, scanner,
                                           store) -> None:
    a = await paid_registration(email="a@example.com", name="Anand")
    b = await paid_registration(email="b@example.com", name="Bela",
                                college="CIT")
    await gate.confirm(a.ticket_number, 1, scanner)
    await gate.confirm(b.ticket_number, 1, scanner)
    await gate.confirm(a.ticket_number, 2, scanner)

    total, rows = await store.list_entries()
    assert total == 3
    # most recent first
    assert [(e.ticket_number, e.day) for e in rows][0] == \
        (a.ticket_number, 2)

    total, rows = await store.list_entries(day=1)
    assert total == 2
    assert {e.attendee_email for e in rows} == {"a@example.com",
                                                "b@example.com"}

    total, rows = await store.list_entries(search="cit")
    assert total == 1
    assert entry_view(rows[0])["name"] == "Bela"

    total, rows = await store.list_entries(search=a.ticket_number)
    assert total == 2

    total, rows = await store.list_entries(page=2, limit=2)
    assert total == 3
    assert len(rows) == 1
