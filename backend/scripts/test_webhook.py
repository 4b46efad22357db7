#!/usr/bin/env python3
"""
Script to send Svix-signed Clerk webhooks to a local server.

Usage:
    # Start your server first
    CLERK_WEBHOOK_SECRET=whsec_... uvicorn main:app --reload

    # Then run this script with the same secret
    python scripts/test_webhook.py --event user_created --user-id user_local_1
    python scripts/test_webhook.py --event user_deleted --user-id user_local_1
    python scripts/test_webhook.py --event all
"""

import argparse
import json
import os
import time
import uuid
from datetime import datetime, timezone

import httpx
from svix.webhooks import Webhook

DEFAULT_SECRET = os.getenv("CLERK_WEBHOOK_SECRET", "whsec_dGVzdF93ZWJob29rX3NlY3JldF9mb3JfbG9jYWw=")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
ENDPOINT = "/api/webhooks/clerk"


def _now_ms() -> int:
    return int(time.time() * 1000)


def send_webhook(payload: dict, secret: str = DEFAULT_SECRET, signature: str = None):
    """Sign and send one webhook to the local server."""
    url = f"{DEFAULT_BASE_URL}{ENDPOINT}"
    body = json.dumps(payload)
    msg_id = f"msg_{uuid.uuid4().hex}"
    now = datetime.now(timezone.utc)

    headers = {
        "Content-Type": "application/json",
        "svix-id": msg_id,
        "svix-timestamp": str(int(now.timestamp())),
        "svix-signature": signature or Webhook(secret).sign(msg_id, now, body),
    }

    print(f"\n{'='*60}")
    print(f"Sending webhook: {payload['type']}")
    print(f"URL: {url}")
    print(f"Payload: {json.dumps(payload, indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, content=body.encode("utf-8"), headers=headers)
        print(f"Response Status: {response.status_code}")
        print(f"Response Body: {response.text}")
        return response
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        return None


def _user_data(user_id: str, updated_at: int, first_name: str = "Ada") -> dict:
    return {
        "id": user_id,
        "object": "user",
        "first_name": first_name,
        "last_name": "Lovelace",
        "username": "ada",
        "image_url": "https://img.clerk.com/ada.png",
        "primary_email_address_id": "idn_1",
        "email_addresses": [{"id": "idn_1", "email_address": "ada@example.com"}],
        "public_metadata": {},
        "created_at": updated_at,
        "updated_at": updated_at,
    }


def send_user_created(user_id: str):
    now = _now_ms()
    return send_webhook({"type": "user.created", "object": "event", "timestamp": now, "data": _user_data(user_id, now)})


def send_user_updated(user_id: str):
    now = _now_ms()
    return send_webhook(
        {"type": "user.updated", "object": "event", "timestamp": now, "data": _user_data(user_id, now, "Augusta")}
    )


def send_user_deleted(user_id: str):
    return send_webhook(
        {
            "type": "user.deleted",
            "object": "event",
            "timestamp": _now_ms(),
            "data": {"id": user_id, "object": "user", "deleted": True},
        }
    )


def send_invalid_signature(user_id: str):
    """Invalid signatures must be rejected with 400."""
    now = _now_ms()
    response = send_webhook(
        {"type": "user.created", "object": "event", "timestamp": now, "data": _user_data(user_id, now)},
        signature="v1,aW52YWxpZA==",
    )
    if response is not None:
        if response.status_code == 400:
            print("\n✓ Correctly rejected invalid signature!")
        else:
            print("\n✗ WARNING: Invalid signature was NOT rejected!")
    return response


EVENTS = {
    "user_created": send_user_created,
    "user_updated": send_user_updated,
    "user_deleted": send_user_deleted,
    "invalid_signature": send_invalid_signature,
}


def main():
    parser = argparse.ArgumentParser(description="Send test Clerk webhooks to a local server")
    parser.add_argument(
        "--event",
        choices=list(EVENTS) + ["all"],
        required=True,
        help="Event to send",
    )
    parser.add_argument("--user-id", default="user_local_test", help="Clerk user ID")
    args = parser.parse_args()

    if args.event == "all":
        for name in ("user_created", "user_updated", "invalid_signature", "user_deleted"):
            EVENTS[name](args.user_id)
    else:
        EVENTS[args.event](args.user_id)


if __name__ == "__main__":
    main()
