#!/usr/bin/env python3
"""
Script to send signed Razorpay webhooks to a local server.

Usage:
    # Start your server first
    RAZORPAY_WEBHOOK_SECRET=test_webhook_secret uvicorn main:app --reload

    # Then run this script
    python scripts/send_test_webhook.py --event subscription.activated --user-id user_123
    python scripts/send_test_webhook.py --event subscription.charged --period-days 30
    python scripts/send_test_webhook.py --event invalid_signature
"""

import argparse
import hashlib
import hmac
import json
import os
import time
import uuid

import httpx

DEFAULT_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
WEBHOOK_PATH = "/api/webhooks/razorpay"

SUBSCRIPTION_STATUS = {
    "subscription.activated": "active",
    "subscription.charged": "active",
    "subscription.resumed": "active",
    "subscription.cancelled": "cancelled",
    "subscription.paused": "paused",
    "subscription.halted": "halted",
    "subscription.pending": "pending",
}


def generate_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 signature, as Razorpay sends it."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_payload(event: str, args: argparse.Namespace) -> dict:
    now = int(time.time())
    notes = {"clerk_user_id": args.user_id, "tier": args.tier, "interval": "monthly"}
    subscription = {
        "id": args.subscription_id,
        "entity": "subscription",
        "plan_id": "plan_test",
        "customer_id": "cust_test",
        "status": SUBSCRIPTION_STATUS.get(event, "active"),
        "current_start": now,
        "current_end": now + args.period_days * 86400,
        "paid_count": 1,
        "notes": notes,
    }
    payload = {"subscription": {"entity": subscription}}
    if event in ("subscription.charged", "payment.failed"):
        payload["payment"] = {"entity": {
            "id": f"pay_{uuid.uuid4().hex[:14]}",
            "entity": "payment",
            "amount": 49900,
            "currency": "INR",
            "status": "failed" if event == "payment.failed" else "captured",
            "subscription_id": args.subscription_id,
            "customer_id": "cust_test",
            "notes": notes,
        }}
    if event == "payment.failed":
        del payload["subscription"]
    return {
        "entity": "event",
        "account_id": "acc_test",
        "event": event,
        "contains": list(payload.keys()),
        "payload": payload,
        "created_at": now,
    }


def send_webhook(base_url: str, secret: str, payload: dict, event_id: str, signature: str = None):
    """Send a webhook to the local server."""
    url = f"{base_url}{WEBHOOK_PATH}"
    payload_bytes = json.dumps(payload).encode("utf-8")

    headers = {
        "Content-Type": "application/json",
        "X-Razorpay-Signature": signature or generate_signature(payload_bytes, secret),
        "X-Razorpay-Event-Id": event_id,
    }

    print(f"\n{'='*60}")
    print(f"Sending webhook: {payload.get('event')}")
    print(f"URL: {url}")
    print(f"Event id: {event_id}")
    print(f"Payload: {json.dumps(payload, indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, content=payload_bytes, headers=headers)
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        return None
    print(f"Response Status: {response.status_code}")
    print(f"Response Body: {response.text}")
    return response


def main():
    parser = argparse.ArgumentParser(description="Send signed Razorpay webhooks locally")
    parser.add_argument(
        "--event",
        choices=sorted(SUBSCRIPTION_STATUS) + ["payment.failed", "invalid_signature"],
        default="subscription.activated",
        help="Which event to send (default: subscription.activated)",
    )
    parser.add_argument("--user-id", default="user_test", help="clerk_user_id note value")
    parser.add_argument("--subscription-id", default="sub_test123", help="Razorpay subscription id")
    parser.add_argument("--tier", default="premium", help="tier note value")
    parser.add_argument("--period-days", type=int, default=30, help="Length of the billing period")
    parser.add_argument("--event-id", default=None, help="X-Razorpay-Event-Id (default: random)")
    parser.add_argument(
        "--secret",
        default=DEFAULT_SECRET,
        help="Webhook secret (default: RAZORPAY_WEBHOOK_SECRET env var or 'test_webhook_secret')",
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help="Base URL of your server (default: http://localhost:8000)",
    )

    args = parser.parse_args()
    event_id = args.event_id or f"evt_{uuid.uuid4().hex[:14]}"

    if args.event == "invalid_signature":
        payload = build_payload("subscription.activated", args)
        response = send_webhook(args.base_url, args.secret, payload, event_id, signature="invalid")
        if response is not None and response.status_code == 400:
            print("\nCorrectly rejected invalid signature")
        else:
            print("\nWARNING: Invalid signature was NOT rejected")
        return

    send_webhook(args.base_url, args.secret, build_payload(args.event, args), event_id)


if __name__ == "__main__":
    main()
