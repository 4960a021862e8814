"""
Smoke checks against a running instance.

- GET /health
- GET /api/sessions
- POST /api/webhooks/gateway/<id> (an event for a session that is not live)

Only checks "no crash": the webhook must answer 2xx with handled=false even
when no session or gateway is up. Set GATEWAY_WEBHOOK_SECRET to the value the
app runs with.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import httpx

# הרצה מכל תיקיה (python scripts/smoke_webhooks.py)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402


logger = get_logger(__name__)

SMOKE_SESSION_ID = "smoke-check"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _gateway_payload() -> dict:
    return {
        "event": "onmessage",
        "session": SMOKE_SESSION_ID,
        "id": "smoke-1",
        "from": "33600000000@c.us",
        "body": "hello",
        "type": "chat",
        "t": 1700000000,
    }


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="tenant-bot-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    headers = {"X-Gateway-Token": os.environ.get("GATEWAY_WEBHOOK_SECRET", "")}

    logger.info("Starting smoke checks", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)
        logger.info("Health ok", extra_data={"sessions": resp.json().get("sessions")})

        resp = client.get(f"{base_url}/api/sessions")
        _check_status(resp)

        webhook_url = f"{base_url}/api/webhooks/gateway/{SMOKE_SESSION_ID}"
        logger.info("Posting gateway webhook payload", extra_data={"url": webhook_url})
        resp = client.post(webhook_url, json=_gateway_payload(), headers=headers)
        _check_status(resp)
        if resp.json().get("handled"):
            raise RuntimeError(f"Session {SMOKE_SESSION_ID!r} is live; smoke event was routed to it")

    logger.info("Smoke checks completed successfully")


if __name__ == "__main__":
    main()
