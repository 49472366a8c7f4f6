"""
Webhook Chaos Simulation Script

Fires duplicated, reordered and concurrently delivered webhooks at a
running development server and checks that every order still converges:

    - a payment_intent.succeeded always wins over a late payment_failed
    - a delivery order ends in exactly one terminal state
    - redelivered events change nothing

Webhooks are signed with the configured secrets, so the server must run
with the same .env (STRIPE_WEBHOOK_SECRET, UBER_WEBHOOK_SIGNING_KEY).

Run from project root: python scripts/simulate.py
"""

import argparse
import asyncio
import hashlib
import hmac
import json
import os
import random
import sys
import time
import uuid
from datetime import datetime
from typing import Any, Optional

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hubplate.core.config import get_settings  # noqa: E402

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20

# Uber statuses a delivery passes through; anything not listed in the
# status mapper lands in the in-progress bucket
COURIER_STATUSES = ["pickup", "pickup_complete", "dropoff", "COMPLETED", "CANCELED"]


# =============================================================================
# SIGNING
# =============================================================================

def sign_stripe(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for a body: t=<ts>,v1=<hmac>."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def sign_uber(body: bytes, secret: str) -> str:
    """X-Uber-Signature header for a body: hex HMAC-SHA256."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def stripe_event(event_type: str, order_id: str, intent_id: str) -> dict[str, Any]:
    return {
        "id": f"evt_sim_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "metadata": {"order_id": order_id},
            }
        },
    }


def uber_event(delivery_id: str, status: str) -> dict[str, Any]:
    return {
        "event_type": "event.delivery_status",
        "meta": {"delivery_id": delivery_id, "status": status},
    }


# =============================================================================
# SENDERS
# =============================================================================

async def send_stripe(client: httpx.AsyncClient, event: dict[str, Any], secret: str) -> int:
    body = json.dumps(event).encode("utf-8")
    response = await client.post(
        f"{API_BASE_URL}/webhooks/stripe",
        content=body,
        headers={"stripe-signature": sign_stripe(body, secret), "content-type": "application/json"},
        timeout=30.0,
    )
    return response.status_code


async def send_uber(client: httpx.AsyncClient, event: dict[str, Any], secret: str) -> int:
    body = json.dumps(event).encode("utf-8")
    response = await client.post(
        f"{API_BASE_URL}/webhooks/uber",
        content=body,
        headers={"x-uber-signature": sign_uber(body, secret), "content-type": "application/json"},
        timeout=30.0,
    )
    return response.status_code


async def seed_order(client: httpx.AsyncClient, delivery: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {"order_type": "delivery" if delivery else "dine_in"}
    if delivery:
        payload["delivery_id"] = f"del_sim_{uuid.uuid4().hex[:16]}"
        payload["delivery_fee"] = "5.99"
    response = await client.post(f"{API_BASE_URL}/simulation/orders", json=payload, timeout=30.0)
    response.raise_for_status()
    return response.json()


# =============================================================================
# ONE ORDER
# =============================================================================

async def storm_order(
    client: httpx.AsyncClient,
    order_num: int,
    stripe_secret: str,
    uber_secret: str,
) -> dict[str, Any]:
    """Seed one order, hit it with a shuffled burst of webhooks, verify."""
    delivery = order_num % 2 == 0
    start_time = time.time()

    try:
        order = await seed_order(client, delivery)
    except httpx.HTTPError as e:
        return {"order_num": order_num, "success": False, "error": f"seed failed: {e}"}

    order_id = order["id"]
    intent_id = f"pi_sim_{uuid.uuid4().hex[:16]}"

    succeeded = stripe_event("payment_intent.succeeded", order_id, intent_id)
    failed = stripe_event("payment_intent.payment_failed", order_id, intent_id)
    sends = [
        send_stripe(client, succeeded, stripe_secret),
        send_stripe(client, succeeded, stripe_secret),  # redelivery
        send_stripe(client, failed, stripe_secret),
    ]

    if delivery:
        statuses = COURIER_STATUSES + [random.choice(COURIER_STATUSES)]  # one repeat
        random.shuffle(statuses)
        sends.extend(
            send_uber(client, uber_event(order["delivery_id"], status), uber_secret)
            for status in statuses
        )

    random.shuffle(sends)
    codes = await asyncio.gather(*sends, return_exceptions=True)
    elapsed = round(time.time() - start_time, 3)

    bad = [c for c in codes if c != 200]
    if bad:
        return {"order_num": order_num, "success": False, "error": f"non-200 responses: {bad}"}

    response = await client.get(f"{API_BASE_URL}/api/orders/{order_id}", timeout=30.0)
    final = response.json()

    problems = []
    if final["payment_status"] != "paid":
        problems.append(f"payment_status={final['payment_status']}")
    if final["paid_at"] is None:
        problems.append("paid_at not set")
    if delivery and final["fulfillment_status"] not in ("completed", "cancelled"):
        problems.append(f"fulfillment_status={final['fulfillment_status']}")
    if delivery and final["fulfillment_status"] == "completed" and final["completed_at"] is None:
        problems.append("completed_at not set")

    return {
        "order_num": order_num,
        "success": not problems,
        "order_id": order_id,
        "mode": "delivery" if delivery else "dine_in",
        "fulfillment": final["fulfillment_status"],
        "time": elapsed,
        "error": ", ".join(problems) or None,
    }


# =============================================================================
# SIMULATION
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS) -> dict[str, Any]:
    """
    Run the chaos simulation.

    Args:
        num_orders: Number of orders to storm
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret or not settings.uber_webhook_signing_key:
        print("STRIPE_WEBHOOK_SECRET and UBER_WEBHOOK_SIGNING_KEY must be set")
        sys.exit(1)

    print("=" * 70)
    print("WEBHOOK CHAOS SIMULATION")
    print("=" * 70)
    print(f"Orders: {num_orders}")
    print(f"Target: {API_BASE_URL}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()

    async with httpx.AsyncClient() as client:
        tasks = [
            storm_order(
                client,
                i + 1,
                settings.stripe_webhook_secret,
                settings.uber_webhook_signing_key,
            )
            for i in range(num_orders)
        ]
        results = await asyncio.gather(*tasks)

    total_time = round(time.time() - start_time, 2)

    converged = [r for r in results if r["success"]]
    diverged = [r for r in results if not r["success"]]
    deliveries = [r for r in converged if r.get("mode") == "delivery"]

    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"\nConverged: {len(converged)}/{num_orders}")
    print(f"Diverged: {len(diverged)}/{num_orders}")
    print(f"Total Time: {total_time}s")

    if deliveries:
        completed = len([r for r in deliveries if r["fulfillment"] == "completed"])
        print(f"\nDeliveries: {completed} completed, {len(deliveries) - completed} cancelled")

    if converged:
        avg_time = round(sum(r["time"] for r in converged) / len(converged), 3)
        print(f"Average burst time: {avg_time}s")

    if diverged:
        print("\nDiverged orders (showing first 5):")
        for r in diverged[:5]:
            print(f"   Order #{r['order_num']}: {r.get('error', 'Unknown error')}")

    print("=" * 70)

    return {
        "total": num_orders,
        "converged": len(converged),
        "diverged": len(diverged),
        "total_time": total_time,
        "results": results,
    }


async def preflight() -> bool:
    """Check the server is up and in development mode."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health", timeout=10.0)
        except httpx.HTTPError as e:
            print(f"Server unreachable: {e}")
            return False

        data = response.json()
        print(f"Status: {data.get('status')}")
        print(f"Database: {data.get('database')}")
        print(f"Redis: {data.get('redis')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Webhook Chaos Simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--url", default=API_BASE_URL, help="Server base URL")
    args = parser.parse_args()

    API_BASE_URL = args.url.rstrip("/")

    if not asyncio.run(preflight()):
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.orders))
    sys.exit(0 if summary["diverged"] == 0 else 1)
