"""
Chaos Simulation Script

Hammers a running development server (ENV_MODE=development, mock gateway)
with the two races the engine must survive:

    coupon   N customers apply one coupon limited to K redemptions at once
    webhook  one signed charge.success delivery replayed R times at once

Seeds its own users, catalog item and coupon straight into DATABASE_URL,
so run it against the same database the server uses.
Run from project root: python scripts/simulate.py
"""

import argparse
import asyncio
import os
import sys
import time
import uuid
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from food_ordering.core.config import get_settings  # noqa: E402
from food_ordering.database import async_session_maker, init_db, transaction  # noqa: E402
from food_ordering.models import Coupon, DiscountType, FoodItem, User  # noqa: E402
from food_ordering.services.payment import MockPaymentGateway  # noqa: E402

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_CUSTOMERS = 50
COUPON_LIMIT = 10
WEBHOOK_REPLAYS = 25


# =============================================================================
# SEEDING
# =============================================================================

async def seed(num_customers: int, coupon_limit: int) -> dict[str, Any]:
    """Create customers, one catalog item and a limited coupon."""
    await init_db()
    run_id = uuid.uuid4().hex[:6].upper()
    users = [
        User(email=f"chaos+{run_id.lower()}-{i}@example.com", full_name=f"Chaos Customer {i}")
        for i in range(num_customers)
    ]
    food = FoodItem(name=f"Jollof Rice {run_id}", price=Decimal("2500.00"))
    coupon = Coupon(
        code=f"CHAOS{run_id}",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("20.00"),
        max_redemptions=coupon_limit,
        redemptions_count=0,
        is_active=True,
    )
    async with async_session_maker() as session:
        async with transaction(session):
            session.add_all([*users, food, coupon])
    return {
        "user_ids": [user.id for user in users],
        "food_id": food.id,
        "coupon_code": coupon.code,
    }


# =============================================================================
# COUPON RACE
# =============================================================================

async def create_order(client: httpx.AsyncClient, user_id: str, food_id: str) -> str:
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json={"items": [{"food_id": food_id, "quantity": 2}]},
        headers={"X-User-Id": user_id},
    )
    response.raise_for_status()
    return response.json()["id"]


async def apply_coupon(client: httpx.AsyncClient, user_id: str, order_id: str, code: str) -> dict[str, Any]:
    start_time = time.time()
    try:
        response = await client.post(
            f"{API_BASE_URL}/api/orders/{order_id}/coupon/apply",
            json={"code": code},
            headers={"X-User-Id": user_id},
        )
        return {"status": response.status_code, "time": round(time.time() - start_time, 3)}
    except httpx.HTTPError as e:
        return {"status": "error", "error": str(e)[:100], "time": round(time.time() - start_time, 3)}


async def run_coupon_race(client: httpx.AsyncClient, fixtures: dict[str, Any], coupon_limit: int) -> bool:
    user_ids = fixtures["user_ids"]
    print(f"\n🎟️  Creating {len(user_ids)} orders...")
    order_ids = await asyncio.gather(*[
        create_order(client, user_id, fixtures["food_id"]) for user_id in user_ids
    ])

    print(f"🚀 Applying {fixtures['coupon_code']} (limit {coupon_limit}) on all of them at once...\n")
    results = await asyncio.gather(*[
        apply_coupon(client, user_id, order_id, fixtures["coupon_code"])
        for user_id, order_id in zip(user_ids, order_ids)
    ])

    statuses = Counter(r["status"] for r in results)
    expected_wins = min(coupon_limit, len(user_ids))
    print(f"   200 applied:       {statuses.get(200, 0)} (expected {expected_wins})")
    print(f"   409 limit reached: {statuses.get(409, 0)} (expected {len(user_ids) - expected_wins})")
    others = {k: v for k, v in statuses.items() if k not in (200, 409)}
    if others:
        print(f"   other:             {others}")
    return statuses.get(200, 0) == expected_wins and not others


# =============================================================================
# WEBHOOK REPLAY
# =============================================================================

async def run_webhook_replay(client: httpx.AsyncClient, fixtures: dict[str, Any], replays: int) -> bool:
    user_id = fixtures["user_ids"][0]
    order_id = await create_order(client, user_id, fixtures["food_id"])
    response = await client.post(
        f"{API_BASE_URL}/api/payments/initialize",
        json={"order_id": order_id},
        headers={"X-User-Id": user_id},
    )
    response.raise_for_status()
    reference = response.json()["reference"]

    settings = get_settings()
    signer = MockPaymentGateway(webhook_secret=settings.paystack_webhook_secret or "mock-webhook-secret")
    raw_body, signature = signer.build_webhook(reference)

    print(f"\n📨 Replaying charge.success for {reference} {replays}x concurrently...\n")
    responses = await asyncio.gather(*[
        client.post(
            f"{API_BASE_URL}/api/payments/webhook/paystack",
            content=raw_body,
            headers={"x-paystack-signature": signature, "content-type": "application/json"},
        )
        for _ in range(replays)
    ])
    messages = Counter(
        r.json().get("message") if r.status_code == 200 else f"HTTP {r.status_code}" for r in responses
    )
    for message, count in messages.most_common():
        print(f"   {message}: {count}")

    order = (await client.get(f"{API_BASE_URL}/api/orders/{order_id}", headers={"X-User-Id": user_id})).json()
    print(f"   order status: {order.get('status')}")
    return messages.get("Webhook processed", 0) == 1 and order.get("status") == "confirmed"


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(num_customers: int, coupon_limit: int, replays: int) -> bool:
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONSISTENCY UNDER CONCURRENCY")
    print("=" * 70)
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    fixtures = await seed(num_customers, coupon_limit)

    async with httpx.AsyncClient(timeout=30.0) as client:
        health = await client.get(f"{API_BASE_URL}/health")
        print(f"\n❤️  Health: {health.json().get('status')}")

        coupon_ok = await run_coupon_race(client, fixtures, coupon_limit)
        webhook_ok = await run_webhook_replay(client, fixtures, replays)

    print("\n" + "=" * 70)
    print(f"{'✅' if coupon_ok else '❌'} Coupon limit held")
    print(f"{'✅' if webhook_ok else '❌'} Webhook settled exactly once")
    print("=" * 70)
    return coupon_ok and webhook_ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--customers", type=int, default=TOTAL_CUSTOMERS, help="Concurrent coupon appliers")
    parser.add_argument("--limit", type=int, default=COUPON_LIMIT, help="Coupon max redemptions")
    parser.add_argument("--replays", type=int, default=WEBHOOK_REPLAYS, help="Concurrent webhook deliveries")
    parser.add_argument("--url", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url
    ok = asyncio.run(run_simulation(args.customers, args.limit, args.replays))
    sys.exit(0 if ok else 1)
