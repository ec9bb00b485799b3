#!/usr/bin/env python3
"""
Manual Webhook Test Script

POSTs a sample Vonage transcription or recording webhook to a running
instance and prints the acknowledgment and its latency. The pipeline itself
runs in the background on the server; follow its progress in the server log.

Usage:
    python scripts/send_test_webhook.py [transcription|recording] [base_url]
"""

import sys
import time
import uuid
import json
from datetime import datetime, timezone

import httpx


DEFAULT_BASE_URL = "http://localhost:8000"


def build_payload(kind: str) -> dict:
    """Sample payload in the shape Vonage sends."""
    conversation_uuid = f"CON-{uuid.uuid4()}"
    recording_uuid = str(uuid.uuid4())
    now = datetime.now(timezone.utc).isoformat()

    if kind == "recording":
        return {
            "conversation_uuid": conversation_uuid,
            "recording_uuid": recording_uuid,
            "recording_url": f"https://api.nexmo.com/v1/files/{recording_uuid}",
            "start_time": now,
            "end_time": now,
            "size": 12345,
            "timestamp": now,
        }

    return {
        "conversation_uuid": conversation_uuid,
        "recording_uuid": recording_uuid,
        "transcription_url": f"https://api.nexmo.com/v1/files/{recording_uuid}-transcription",
        "type": "transcription",
        "status": "completed",
    }


def send_webhook(kind: str, base_url: str):
    """Send one webhook and report the acknowledgment."""
    url = f"{base_url.rstrip('/')}/webhooks/{kind}"
    payload = build_payload(kind)

    print("=" * 60)
    print(f"MANUAL WEBHOOK TEST - {kind}")
    print("=" * 60)
    print(f"Target URL: {url}")
    print(f"Payload: {json.dumps(payload, indent=4)}")
    print("-" * 60)

    try:
        with httpx.Client(timeout=10.0) as client:
            started = time.perf_counter()
            response = client.post(url, json=payload)
            elapsed_ms = (time.perf_counter() - started) * 1000
    except httpx.HTTPError as e:
        print(f"ERROR: Request failed: {type(e).__name__}: {e}")
        sys.exit(1)

    print(f"Status Code: {response.status_code}")
    print(f"Latency: {elapsed_ms:.1f} ms")
    print(f"Response: {response.text}")

    if response.status_code != 200:
        sys.exit(1)


if __name__ == "__main__":
    kind = sys.argv[1] if len(sys.argv) > 1 else "transcription"
    if kind not in ("transcription", "recording"):
        print(f"ERROR: Unknown webhook kind: {kind}")
        sys.exit(1)
    base_url = sys.argv[2] if len(sys.argv) > 2 else DEFAULT_BASE_URL
    send_webhook(kind, base_url)
