#!/usr/bin/env python3
"""Send demo events to the ingest endpoint: valid ones, duplicates, optionally one invalid body."""

from __future__ import annotations

import argparse
import os
import time
from typing import Any

import httpx

DEFAULT_URL = "http://localhost:8000/events/ingest"
DUPLICATE_EVENT_ID = "evt_demo_DUPLICATE"


def make_valid_event(index: int) -> dict[str, Any]:
    return {
        "event_id": f"evt_demo_{index:03d}",
        "event_type": "subscription.paid",
        "payload": {
            "subscription_id": f"sub_demo_{index:03d}",
            "amount": 100 + index,
            "currency": "EUR",
            "demo": True,
        },
    }


def make_duplicate_event(duplicate_index: int) -> dict[str, Any]:
    # same event id and subscription every time
    return {
        "event_id": DUPLICATE_EVENT_ID,
        "event_type": "subscription.paid",
        "payload": {
            "subscription_id": "sub_demo_DUPLICATE",
            "amount": 999,
            "currency": "EUR",
            "demo": True,
            "duplicate_index": duplicate_index,
        },
    }


def make_invalid_event() -> dict[str, Any]:
    return {"event_id": "", "event_type": 123, "payload": "not-an-object"}


def send_one(client: httpx.Client, url: str, body: dict[str, Any]) -> tuple[str, float, str]:
    started_at = time.perf_counter()
    try:
        response = client.post(url, json=body)
    except httpx.HTTPError as exc:
        return "ERR", (time.perf_counter() - started_at) * 1000.0, str(exc)
    return str(response.status_code), (time.perf_counter() - started_at) * 1000.0, response.text


def _non_negative_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise argparse.ArgumentTypeError("must be a non-negative integer")
    return value


def main() -> None:
    parser = argparse.ArgumentParser(description="Send demo events to the ledger ingest endpoint.")
    parser.add_argument("--url", default=os.getenv("API_URL", DEFAULT_URL), help="Ingest endpoint URL")
    parser.add_argument("--count", type=_non_negative_int, default=5, help="Number of distinct valid events")
    parser.add_argument("--duplicates", type=_non_negative_int, default=2, help="Events sharing one event id")
    parser.add_argument("--invalid", action="store_true", help="Also send one malformed body (expect 422)")
    args = parser.parse_args()

    batch: list[tuple[str, dict[str, Any]]] = [("valid", make_valid_event(i)) for i in range(1, args.count + 1)]
    batch.extend(("duplicate", make_duplicate_event(i)) for i in range(1, args.duplicates + 1))
    if args.invalid:
        batch.append(("invalid", make_invalid_event()))

    print(f"sending {len(batch)} events to {args.url}")
    with httpx.Client(timeout=10.0) as client:
        for label, body in batch:
            status_code, elapsed_ms, text = send_one(client, args.url, body)
            print(f"{status_code:<4} {elapsed_ms:7.1f}ms {label:<9} event_id={body.get('event_id')!s:<20} {text}")


if __name__ == "__main__":
    main()
