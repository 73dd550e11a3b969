#!/usr/bin/env python3
"""
Booking lifecycle and payment capture flow script.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Tokens are minted locally with the service's JWT secret, so run it with the
same environment as the API (JWT_SECRET_KEY, PAYMENT_* settings).

Usage:
    python scripts/flow_complete_and_capture.py --price 12000
    python scripts/flow_complete_and_capture.py --price 12000 --payment-method pm_card_visa --skip-authorize

Flow:
    1. Customer requests a visit
    2. Pro accepts
    3. Customer authorizes the payment hold
    4. Pro heads over and starts the job
    5. Pro completes the job (captures the hold)
    6. Retry capture if payment did not settle
"""

import argparse
import json
import sys
import uuid

import httpx

from visitpay.config import get_settings
from visitpay.core.security import create_access_token
from visitpay.domain.booking_state import ActorRole

BASE_URL = "http://localhost:8000"
API = "/api/v1"


def api_request(token: str, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make authenticated API request."""
    headers = {"Authorization": f"Bearer {token}"}
    response = httpx.request(
        method,
        f"{BASE_URL}{API}{endpoint}",
        headers=headers,
        json=data,
        timeout=30.0,
    )
    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None) -> bool:
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    data = result["data"]
    if fields:
        data = {k: data.get(k) for k in fields if k in data}
    print(json.dumps(data, indent=2))
    return True


def transition(token: str, booking_id: str, target: str) -> dict:
    return api_request(token, "POST", f"/bookings/{booking_id}/transition", {"targetStatus": target})


def main():
    parser = argparse.ArgumentParser(description="Booking lifecycle and payment capture flow")
    parser.add_argument("--price", type=int, required=True, help="Price in cents")
    parser.add_argument("--payment-method", default="pm_card_visa", help="Gateway payment method reference")
    parser.add_argument("--skip-authorize", action="store_true", help="Complete without a payment hold")
    args = parser.parse_args()

    settings = get_settings()
    customer_id = uuid.uuid4()
    pro_id = uuid.uuid4()
    customer_token = create_access_token(settings, customer_id, ActorRole.CUSTOMER)
    pro_token = create_access_token(settings, uuid.uuid4(), ActorRole.PRO, pro_id=pro_id)
    fields = ["id", "status", "payment_state", "payment_hold_ref", "paid_at"]

    print_step(1, "Customer requests a visit")
    result = api_request(customer_token, "POST", "/bookings", {"pro_id": str(pro_id), "price": args.price})
    if not print_result(result, fields):
        sys.exit(1)
    booking_id = result["data"]["id"]

    print_step(2, "Pro accepts")
    if not print_result(transition(pro_token, booking_id, "accepted"), fields):
        sys.exit(1)

    if not args.skip_authorize:
        print_step(3, "Customer authorizes payment")
        result = api_request(
            customer_token,
            "POST",
            f"/bookings/{booking_id}/authorize",
            {"paymentMethodRef": args.payment_method},
        )
        if not print_result(result):
            sys.exit(1)
        if result["data"].get("requires_action"):
            print("Card requires customer authentication; finish it before completing the job.")

    print_step(4, "Pro on the way, job in progress")
    for target in ("on_the_way", "in_progress"):
        if not print_result(transition(pro_token, booking_id, target), fields):
            sys.exit(1)

    print_step(5, "Pro completes the job")
    result = transition(pro_token, booking_id, "completed_pending_payment")
    if result["status"] == 207:
        print(f"Partial success: {result['data']['detail']} ({result['data']['code']})")
        print_step(6, "Retry capture")
        result = api_request(pro_token, "POST", f"/bookings/{booking_id}/capture")
    if not print_result(result, fields):
        sys.exit(1)

    print(f"\nBooking {booking_id} finished in status {result['data'].get('status')}")


if __name__ == "__main__":
    main()
