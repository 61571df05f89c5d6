"""Completion webhooks for finished jobs.

When a job carrying a ``callback`` reaches a terminal state its outcome is
POSTed as JSON to the callback URL.  With a secret configured the body is
signed::

    x-workflow-signature: sha256=<hex HMAC-SHA256 of the raw body>

Delivery is attempted up to ``callback_max_attempts`` times with a 1s, 2s,
… backoff.  A callback that cannot be delivered is logged and otherwise
ignored; it never changes the job's status.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.models import CallbackConfig, Job, utcnow

logger = get_logger("jobs.callback")


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_callback_body(job: Job) -> dict[str, Any]:
    body: dict[str, Any] = {
        "job_id": job.id,
        "type": str(job.type),
        "status": str(job.status),
        "timestamp": utcnow().isoformat(),
    }
    if job.error is not None:
        body["error"] = job.error
    else:
        body["result"] = job.result
    return body


async def notify_callback(
    job: Job,
    callback: CallbackConfig,
    client: httpx.AsyncClient | None = None,
    backoff_seconds: float = 1.0,
) -> bool:
    """POST the outcome of *job* to *callback*. Returns True once delivered."""
    if not callback.url.startswith(("http://", "https://")):
        logger.warning("callback | job %s: ignoring non-http url %r", job.id, callback.url)
        return False

    settings = get_settings()
    body = json.dumps(build_callback_body(job), default=str).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "x-workflow-job-id": job.id,
        "x-workflow-job-type": str(job.type),
        "x-workflow-job-status": str(job.status),
    }
    if callback.secret:
        headers["x-workflow-signature"] = sign_payload(body, callback.secret)

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=settings.callback_timeout_seconds)
    attempts = max(1, settings.callback_max_attempts)
    try:
        for attempt in range(1, attempts + 1):
            try:
                response = await client.post(callback.url, content=body, headers=headers)
                response.raise_for_status()
                logger.info("callback | job %s delivered to %s", job.id, callback.url)
                return True
            except httpx.HTTPError as exc:
                logger.warning(
                    "callback | job %s attempt %d/%d failed: %s", job.id, attempt, attempts, exc
                )
                if attempt < attempts:
                    await asyncio.sleep(backoff_seconds * attempt)
    finally:
        if owns_client:
            await client.aclose()

    logger.error("callback | job %s: giving up on %s", job.id, callback.url)
    return False
