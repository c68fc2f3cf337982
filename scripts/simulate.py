"""
Chaos Simulation Script

Races many staff clients against the same orders to check the claim
invariants end to end:
    - exactly one chef wins each kitchen claim, the rest see 409/412
    - exactly one waiter wins each service claim
    - every order ends COMPLETED at version 4

Run from project root (API running on :8001): python scripts/simulate.py

Author: Khalil_Bannouri
Version: 4.0.0
"""

import asyncio
import sys
import random
import time
import argparse
from collections import Counter
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
CHEFS = 5
WAITERS = 4

MENU_ITEMS = [
    {"menu_item_id": "pizza-margherita", "name": "Pizza Margherita"},
    {"menu_item_id": "pepperoni-pizza", "name": "Pepperoni Pizza"},
    {"menu_item_id": "caesar-salad", "name": "Caesar Salad"},
    {"menu_item_id": "garlic-bread", "name": "Garlic Bread"},
    {"menu_item_id": "pasta-carbonara", "name": "Pasta Carbonara"},
    {"menu_item_id": "tiramisu", "name": "Tiramisu"},
]


def actor_headers(actor_id: str, role: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


def generate_random_items() -> list[dict]:
    """Generate random order items."""
    items = []
    for _ in range(random.randint(1, 4)):
        item = dict(random.choice(MENU_ITEMS))
        item["quantity"] = random.randint(1, 3)
        item["modifiers"] = random.choice([[], ["no onions"], ["extra cheese"]])
        items.append(item)
    return items


async def create_order(client: httpx.AsyncClient, order_num: int) -> dict[str, Any]:
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json={
            "items": generate_random_items(),
            "table_number": str(random.randint(1, 30)),
            "payment_intent_id": f"pi_mock_{random.randint(100000, 999999)}",
        },
        headers=actor_headers(f"customer-{order_num}", "customer"),
        timeout=30.0,
    )
    response.raise_for_status()
    return response.json()


async def race_claims(
    client: httpx.AsyncClient,
    order: dict[str, Any],
    role: str,
    staff: list[str],
) -> dict[str, Any]:
    """Every staff member claims the same order at the same version."""

    async def attempt(staff_id: str) -> tuple[str, int, dict]:
        await asyncio.sleep(random.uniform(0, 0.02))
        response = await client.post(
            f"{API_BASE_URL}/api/orders/{order['id']}/claim",
            json={"role": role, "expected_version": order["version"]},
            headers=actor_headers(staff_id, role),
            timeout=30.0,
        )
        return staff_id, response.status_code, response.json()

    outcomes = await asyncio.gather(*(attempt(s) for s in staff))
    winners = [(s, body) for s, code, body in outcomes if code == 200]
    codes = Counter(code for _, code, _ in outcomes)
    return {"winners": winners, "codes": codes}


async def advance(
    client: httpx.AsyncClient,
    order: dict[str, Any],
    to_status: str,
    actor_id: str,
    role: str,
) -> dict[str, Any]:
    response = await client.post(
        f"{API_BASE_URL}/api/orders/{order['id']}/advance",
        json={"to_status": to_status, "expected_version": order["version"]},
        headers=actor_headers(actor_id, role),
        timeout=30.0,
    )
    response.raise_for_status()
    return response.json()


async def run_order_lifecycle(
    client: httpx.AsyncClient,
    order_num: int,
    chefs: int,
    waiters: int,
) -> dict[str, Any]:
    """Create one order and drive it through both contested claims."""
    start_time = time.time()
    result: dict[str, Any] = {"order_num": order_num, "violations": [], "codes": Counter()}

    try:
        order = await create_order(client, order_num)
        result["order_id"] = order["id"]

        kitchen = await race_claims(client, order, "kitchen", [f"chef-{i}" for i in range(chefs)])
        result["codes"].update(kitchen["codes"])
        if len(kitchen["winners"]) != 1:
            result["violations"].append(f"{len(kitchen['winners'])} kitchen winners")
            return result
        chef, order = kitchen["winners"][0]

        order = await advance(client, order, "ready_to_serve", chef, "kitchen")

        service = await race_claims(client, order, "service", [f"waiter-{i}" for i in range(waiters)])
        result["codes"].update(service["codes"])
        if len(service["winners"]) != 1:
            result["violations"].append(f"{len(service['winners'])} service winners")
            return result
        waiter, order = service["winners"][0]

        order = await advance(client, order, "completed", waiter, "service")

        if order["status"] != "completed" or order["version"] != 4:
            result["violations"].append(f"ended {order['status']} at v{order['version']}")

    except httpx.HTTPError as e:
        result["violations"].append(f"http error: {str(e)[:100]}")
    finally:
        result["time"] = round(time.time() - start_time, 3)

    return result


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    num_orders: int = TOTAL_ORDERS,
    chefs: int = CHEFS,
    waiters: int = WAITERS,
) -> dict[str, Any]:
    """Run the chaos simulation."""
    print("=" * 70)
    print("🔥 CHAOS SIMULATION - CONTESTED CLAIMS")
    print("=" * 70)
    print(f"📋 Orders: {num_orders}  👨‍🍳 Chefs: {chefs}  🧑‍🍽️ Waiters: {waiters}")
    print(f"🎯 Target: {API_BASE_URL}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient() as client:
        results = await asyncio.gather(*(
            run_order_lifecycle(client, i + 1, chefs, waiters) for i in range(num_orders)
        ))
    total_time = round(time.time() - start_time, 2)

    codes = Counter()
    for r in results:
        codes.update(r["codes"])
    broken = [r for r in results if r["violations"]]

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Clean lifecycles: {num_orders - len(broken)}/{num_orders}")
    print(f"❌ Invariant violations: {len(broken)}")
    print(f"⏱️  Total Time: {total_time}s")
    print("\n📈 Claim responses:")
    print(f"   200 claimed:       {codes.get(200, 0)}")
    print(f"   409 already taken: {codes.get(409, 0)}")
    print(f"   412 stale version: {codes.get(412, 0)}")

    if broken:
        print("\n⚠️  Violations (showing first 5):")
        for r in broken[:5]:
            print(f"   Order #{r['order_num']} ({r.get('order_id', '-')}): {'; '.join(r['violations'])}")

    print("=" * 70)

    return {
        "total": num_orders,
        "violations": len(broken),
        "total_time": total_time,
        "codes": dict(codes),
    }


async def preflight() -> bool:
    """Health check before the chaos run."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health", timeout=10.0)
        except httpx.HTTPError as e:
            print(f"❌ API unreachable: {e}")
            return False
    if response.status_code != 200:
        print(f"❌ Health check failed: {response.text}")
        return False
    data = response.json()
    print(f"✅ Status: {data.get('status')} (database: {data.get('database')}, effects: {data.get('effects_backend')})")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chaos Simulation Script")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--chefs", type=int, default=CHEFS, help="Chefs racing per order")
    parser.add_argument("--waiters", type=int, default=WAITERS, help="Waiters racing per order")
    parser.add_argument("--skip-checks", action="store_true", help="Skip the health check")
    args = parser.parse_args()

    if not args.skip_checks and not asyncio.run(preflight()):
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.orders, args.chefs, args.waiters))
    sys.exit(1 if summary["violations"] else 0)
