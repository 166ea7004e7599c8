#!/usr/bin/env python3
"""
Klubtix load client (async)

Simulates the buyer flow against a server running with MockPay:
  1) POST /api/checkout  (event, tier, quantity, email) -> {order_id, payment_ref}
  2) POST /mockpay/{payment_ref}/emit  (outcome=succeeded|failed|canceled)
     - the server delivers the signed webhook to itself
  3) Poll GET /api/checkout/status?order_id=... until the order settles
     (or timeout)

It records timings per order, checks that every paid order got exactly
`quantity` tickets and that no ticket code was handed out twice, and prints
an aggregate report.

Usage:
  python -m klubtix.load_client --base http://localhost:8000 \
      --event evt-launch --tier tier-ga --total 200 --concurrency 50

  python -m klubtix.load_client --base http://localhost:8000 \
      --event evt-launch --tier tier-ga --fail-rate 0.1 --confirm

Notes:
- Keep server workers=1 with MockPay: intents live in process memory.
"""

import argparse
import asyncio
import random
import string
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

SETTLED = ("paid", "completed", "failed", "cancelled")


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # paid/failed/cancelled/TIMEOUT/ERROR
    quantity: int = 0
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0  # time until the order settled
    ticket_codes: List[str] = field(default_factory=list)
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def duplicate_codes(self) -> List[str]:
        counts = Counter(c for r in self.results for c in r.ticket_codes)
        return [code for code, n in counts.items() if n > 1]

    def short_orders(self) -> int:
        return sum(
            1 for r in self.results
            if r.outcome == "paid" and len(r.ticket_codes) != r.quantity
        )

    def summary(self) -> Dict[str, float]:
        done = [r for r in self.results if r.outcome in SETTLED]
        lat = [r.t_observed for r in done if r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": sum(1 for r in self.results if r.outcome == "paid"),
            "failed": sum(1 for r in self.results if r.outcome == "failed"),
            "cancelled": sum(
                1 for r in self.results if r.outcome == "cancelled"
            ),
            "timeout": sum(1 for r in self.results if r.outcome == "TIMEOUT"),
            "error": sum(1 for r in self.results if r.outcome == "ERROR"),
            "tickets": sum(len(r.ticket_codes) for r in self.results),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"PAID: {int(s['paid'])}   FAILED: {int(s['failed'])}   "
            f"CANCELLED: {int(s['cancelled'])}   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed order resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )
        dups = self.duplicate_codes()
        print(
            f"Tickets: {int(s['tickets'])}   "
            f"duplicate codes: {len(dups)}   "
            f"paid orders short of tickets: {self.short_orders()}"
        )
        for code in dups[:10]:
            print(f"  DUPLICATE {code}")
        errors = Counter(r.err for r in self.results if r.err)
        for err, n in errors.most_common(5):
            print(f"  {n}x {err}")


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    event_id: str,
    tier_id: str,
    quantity: int,
    outcome: str,
    confirm: bool,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)
    headers = {"X-Buyer-Id": f"load-{random.getrandbits(48):x}"}

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/checkout",
            json={
                "event_id": event_id,
                "selections": [{"tier_id": tier_id, "quantity": quantity}],
                "buyer_email": _rand_email(),
            },
            headers=headers,
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
        order_id = j["order_id"]
        payment_ref = j["payment_ref"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) play the buyer on the MockPay page
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{payment_ref}/emit",
            json={"outcome": outcome},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
        if confirm:
            # race the webhook with a synchronous confirmation
            await client.post(
                f"{base}/api/checkout/confirm",
                json={"order_id": order_id},
                headers=headers,
                timeout=30.0,
            )
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 3) poll order status until settled or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "pending"
    jo: dict = {}
    try:
        while time.perf_counter() < deadline:
            g = await client.get(
                f"{base}/api/checkout/status",
                params={"order_id": order_id},
                headers=headers,
                timeout=10.0,
            )
            if g.status_code != 200:
                await asyncio.sleep(poll_interval_s)
                continue
            jo = g.json()
            status = jo.get("status", status)
            if status in SETTLED and (
                status not in ("paid", "completed")
                or len(jo.get("tickets", ())) >= quantity
            ):
                break
            await asyncio.sleep(poll_interval_s)
    except httpx.HTTPError as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.ticket_codes = [t["ticket_code"] for t in jo.get("tickets", ())]
    if status in SETTLED:
        r.outcome = "paid" if status == "completed" else status
    else:
        r.outcome = "TIMEOUT"
    return r


async def run_load(
    base: str,
    event_id: str,
    tier_id: str,
    total: int,
    concurrency: int,
    max_quantity: int,
    fail_rate: float,
    cancel_rate: float,
    confirm: bool,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "KlubtixLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                # choose outcome
                rnd = random.random()
                if rnd < fail_rate:
                    outcome = "failed"
                elif rnd < fail_rate + cancel_rate:
                    outcome = "canceled"
                else:
                    outcome = "succeeded"

                res = await one_order(
                    client, base, event_id, tier_id,
                    random.randint(1, max_quantity), outcome, confirm,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

    return stats


def main():
    ap = argparse.ArgumentParser(description="Klubtix load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--tier", required=True, help="Ticket tier id")
    ap.add_argument("--total", type=int, default=100,
                    help="Total orders to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--max-quantity", type=int, default=4,
                    help="Tickets per order are drawn from 1..N")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of orders whose card is declined")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of orders the buyer abandons")
    ap.add_argument("--confirm", action="store_true",
                    help="Also confirm synchronously, racing the webhook")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for the order to settle")
    args = ap.parse_args()

    if args.fail_rate + args.cancel_rate > 0.95:
        print(
            "Warning: combined fail+cancel rate is very high; "
            "few PAID outcomes will occur."
        )

    t_start = time.perf_counter()
    stats = asyncio.run(run_load(
        base=args.base,
        event_id=args.event,
        tier_id=args.tier,
        total=args.total,
        concurrency=args.concurrency,
        max_quantity=max(1, args.max_quantity),
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        confirm=args.confirm,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)


if __name__ == "__main__":
    main()
