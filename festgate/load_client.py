#!/usr/bin/env python3
"""
festgate gate-storm client (async)

Simulates several scanner devices at one gate scanning the same ticket:
  1) POST /api/admin/login                        -> bearer token
  2) (no --ticket given) book a ticket through the MockPay flow:
       POST /api/registrations
       POST /api/registrations/{id}/order
       POST /api/mockpay/{order_id}/emit  (t=captured)
       GET  /api/registrations/{id}     -> ticketNumber
  3) fire --scanners concurrent POST /api/tickets/confirm-entry-multi-day
     for (ticket, day) and tally the outcomes

Exactly one scan must come back "admitted"; every other one must be
"duplicate_entry" carrying the admitted scan's timestamp.

Usage:
  python -m festgate.load_client --base http://localhost:8000 \
                                 --scanners 50 --day 1

Notes:
- Needs PAYMENT_GATEWAY=mock on the server unless --ticket is passed.
"""

import asyncio
import random
import string
import sys
import time
import argparse
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional, List, Dict

import httpx


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Scan:
    outcome: str  # admitted/duplicate_entry/<error code>/ERROR
    entry_time: Optional[str] = None
    latency: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    scans: List[Scan] = field(default_factory=list)

    def add(self, s: Scan):
        self.scans.append(s)

    def summary(self) -> Dict[str, object]:
        outcomes = Counter(s.outcome for s in self.scans)
        admitted = [s for s in self.scans if s.outcome == "admitted"]
        dups = [s for s in self.scans if s.outcome == "duplicate_entry"]
        first = admitted[0].entry_time if len(admitted) == 1 else None
        consistent = bool(first) and all(
            d.entry_time == first for d in dups
        )
        lat = sorted(s.latency for s in self.scans if s.latency > 0)
        return {
            "total": len(self.scans),
            "outcomes": dict(outcomes),
            "exactly_one_admitted": len(admitted) == 1,
            "duplicates_report_original": consistent,
            "p50_s": lat[len(lat) // 2] if lat else 0.0,
            "max_s": lat[-1] if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Gate Storm Summary ===")
        print(f"Scans: {s['total']}   Outcomes: {s['outcomes']}")
        print(
            f"Exactly one admitted: {s['exactly_one_admitted']}   "
            f"Duplicates carry original time: "
            f"{s['duplicates_report_original']}"
        )
        print(
            f"Latency: p50 {s['p50_s']:.3f}s   max {s['max_s']:.3f}s   "
            f"Wall time: {elapsed_s:.3f}s"
        )


async def login(client: httpx.AsyncClient, base: str, username: str,
                password: str) -> str:
    resp = await client.post(f"{base}/api/admin/login", json={
        "username": username, "password": password,
    })
    resp.raise_for_status()
    return resp.json()["data"]["accessToken"]


async def book_ticket(client: httpx.AsyncClient, base: str) -> str:
    resp = await client.post(f"{base}/api/registrations", json={
        "name": "Gate Storm",
        "email": _rand_email(),
        "phone": "9999999999",
        "college": "Load Test College",
        "year": "3rd Year",
        "ticketQuantity": 1,
    })
    resp.raise_for_status()
    reg_id = resp.json()["data"]["id"]

    resp = await client.post(f"{base}/api/registrations/{reg_id}/order")
    resp.raise_for_status()
    order_id = resp.json()["data"]["orderId"]

    resp = await client.post(f"{base}/api/mockpay/{order_id}/emit",
                             json={"t": "captured"})
    resp.raise_for_status()

    resp = await client.get(f"{base}/api/registrations/{reg_id}")
    resp.raise_for_status()
    ticket = resp.json()["data"]["ticketNumber"]
    if not ticket:
        raise RuntimeError(f"registration {reg_id} has no ticket yet")
    return ticket


async def one_scan(client: httpx.AsyncClient, base: str, token: str,
                   ticket: str, day: int) -> Scan:
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/tickets/confirm-entry-multi-day",
            json={"ticketNumber": ticket, "eventDay": day},
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
    except httpx.HTTPError as e:
        return Scan(outcome="ERROR", err=str(e))
    latency = time.perf_counter() - t0
    j = resp.json()
    if resp.status_code != 200:
        return Scan(outcome=j.get("error", f"HTTP {resp.status_code}"),
                    latency=latency, err=j.get("message"))
    return Scan(outcome=j["outcome"], entry_time=j.get("entryTime"),
                latency=latency)


async def run_storm(base: str, scanners: int, day: int,
                    ticket: Optional[str], username: str,
                    password: str) -> Stats:
    stats = Stats()
    limits = httpx.Limits(
        max_keepalive_connections=scanners, max_connections=scanners
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "FestgateGateStorm/1.0"}
    ) as client:
        token = await login(client, base, username, password)
        if ticket is None:
            ticket = await book_ticket(client, base)
        print(f"Ticket {ticket}, day {day}, {scanners} scanners")

        # line everybody up, then release at once
        go = asyncio.Event()

        async def scanner(n: int):
            await go.wait()
            stats.add(await one_scan(client, base, token, ticket, day))

        tasks = [asyncio.create_task(scanner(i)) for i in range(scanners)]
        await asyncio.sleep(0)
        go.set()
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="festgate gate-storm client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--scanners", type=int, default=20,
                    help="Concurrent confirm-entry calls")
    ap.add_argument("--day", type=int, default=1, help="Event day")
    ap.add_argument("--ticket", default=None,
                    help="Existing ticket number (default: book a new one)")
    ap.add_argument("--username", default="scanner")
    ap.add_argument("--password", default="gatekeeper")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_storm(
        base=args.base,
        scanners=args.scanners,
        day=args.day,
        ticket=args.ticket,
        username=args.username,
        password=args.password,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)
    s = stats.summary()
    if not (s["exactly_one_admitted"] and s["duplicates_report_original"]):
        sys.exit(1)


if __name__ == "__main__":
    main()
