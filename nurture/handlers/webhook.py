"""Call an external HTTP endpoint from a workflow."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from .. import constants
from ..errors import ConfigurationError, WebhookError, error_message
from ..personalize import personalize, truncate_text
from ..utils.retry import RetryKind
from .base import AuditEvent, StepContext, StepOutcome, Transition

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD")
ACCEPT = "application/json, text/plain;q=0.9, */*;q=0.8"


def webhook_method(value: Any) -> str:
    method = str(value or "POST").upper()
    return method if method in METHODS else "POST"


def webhook_timeout_ms(value: Any, default_ms: int, max_ms: int) -> int:
    try:
        timeout = float(value) if value not in (None, "") else float(default_ms)
    except (TypeError, ValueError):
        return default_ms
    if timeout != timeout or timeout < constants.WEBHOOK_MIN_TIMEOUT_MS:
        return default_ms
    return int(min(timeout, max_ms))


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


class WebhookRequest:
    """The rendered request for one webhook node execution."""

    def __init__(self, ctx: StepContext) -> None:
        config = ctx.config
        settings = ctx.services.settings
        self._ctx = ctx
        sender_name = ctx.workflow.name or "Automation"

        def render(text: Any) -> str:
            return personalize(str(text or ""), ctx.contact, ctx.state, sender_name, "")

        raw_url = render(str(config.get("url") or "").strip())
        if not raw_url:
            raise ConfigurationError("Webhook URL is required.")
        parsed = urlparse(raw_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigurationError(f"Webhook URL is invalid: {raw_url}")
        self.url = raw_url
        self.method = webhook_method(config.get("method"))
        self.timeout_ms = webhook_timeout_ms(
            config.get("timeoutMs"),
            settings.webhook_default_timeout_ms,
            settings.webhook_max_timeout_ms,
        )

        headers: Dict[str, str] = {
            "Accept": ACCEPT,
            "X-Automation-Workflow-Id": ctx.workflow.id,
            "X-Automation-Contact-Id": ctx.contact.id,
            "X-Automation-Node-Id": ctx.step_key,
        }
        configured = config.get("headers")
        if isinstance(configured, dict):
            for key, value in configured.items():
                name = str(key or "").strip()
                if name:
                    headers[name] = render(value)

        auth_type = str(config.get("authType") or "none").lower()
        token = str(config.get("authToken") or "").strip()
        if token:
            token = render(token)
            if auth_type == "bearer":
                headers["Authorization"] = f"Bearer {token}"
            elif auth_type == "api_key":
                header = str(config.get("authHeader") or "").strip() or "x-api-key"
                headers[header] = token

        self.body: Optional[str] = None
        if self.method not in ("GET", "HEAD"):
            template = str(config.get("payloadTemplate") or "").strip()
            if template:
                rendered = render(template)
                content_type = "text/plain; charset=utf-8"
                self.body = rendered
                stripped = rendered.strip()
                if stripped[:1] in ("{", "[") and stripped[-1:] in ("}", "]"):
                    try:
                        self.body = json.dumps(json.loads(stripped), separators=(",", ":"))
                        content_type = "application/json"
                    except ValueError:
                        pass
            else:
                self.body = json.dumps(
                    {
                        "event": "automation_webhook",
                        "workflow_id": ctx.workflow.id,
                        "workflow_name": ctx.workflow.name,
                        "contact_id": ctx.contact.id,
                        "contact_email": ctx.contact.email,
                        "node_id": ctx.step_key,
                        "step_index": ctx.step_index,
                        "occurred_at": ctx.now.isoformat(),
                    }
                )
                content_type = "application/json"
            if not _has_header(headers, "content-type"):
                headers["Content-Type"] = content_type
        self.headers = headers

    async def send(self, client: httpx.AsyncClient) -> httpx.Response:
        """Perform the request within the configured timeout.

        Raises:
            WebhookError: On transport errors or timeouts.
        """
        seconds = self.timeout_ms / 1000
        try:
            return await asyncio.wait_for(
                client.request(
                    self.method,
                    self.url,
                    headers=self.headers,
                    content=self.body,
                    timeout=httpx.Timeout(seconds),
                ),
                timeout=seconds,
            )
        except asyncio.TimeoutError as e:
            raise WebhookError(f"Webhook request timed out after {self.timeout_ms} ms") from e
        except httpx.TimeoutException as e:
            raise WebhookError(f"Webhook request timed out after {self.timeout_ms} ms") from e
        except httpx.HTTPError as e:
            raise WebhookError(f"Webhook request failed: {e}") from e


async def handle_webhook(ctx: StepContext) -> StepOutcome:
    retry = ctx.services.settings.retry
    preview_chars = ctx.services.settings.preview_chars

    def failed(message: str) -> StepOutcome:
        logger.warning(f"Webhook step {ctx.step_key} failed for contact {ctx.contact.id}: {message}")
        return StepOutcome(
            transition=Transition.RETRY,
            state=ctx.state,
            run_at=retry.next_attempt_at(RetryKind.WEBHOOK, ctx.now),
            error=message,
            events=[
                AuditEvent(
                    event_type="webhook_failed",
                    message=message,
                    metadata={"node_id": ctx.step_key},
                )
            ],
        )

    try:
        request = WebhookRequest(ctx)
        response = await request.send(ctx.services.http)
    except (ConfigurationError, WebhookError) as e:
        return failed(error_message(e))

    response_preview = truncate_text(response.text or "", preview_chars)
    if not response.is_success:
        return failed(
            f"Webhook request failed ({response.status_code}) "
            f"{response.reason_phrase or ''} {response_preview}".strip()
        )

    request_preview = truncate_text(request.body or "", preview_chars)
    results = dict(ctx.state.webhook_results)
    results[ctx.step_key] = {
        "status": response.status_code,
        "ok": True,
        "url": request.url,
        "method": request.method,
        "request_preview": request_preview or None,
        "response_preview": response_preview or None,
        "at": ctx.now.isoformat(),
    }
    state = ctx.state.model_copy(
        update={
            "webhook_results": results,
            "last_webhook_status": response.status_code,
            "last_webhook_at": ctx.now,
        }
    )
    return StepOutcome(
        transition=Transition.ADVANCE,
        state=state,
        events=[
            AuditEvent(
                event_type="webhook_sent",
                message=f"Webhook responded with {response.status_code}.",
                metadata={
                    "node_id": ctx.step_key,
                    "method": request.method,
                    "url": request.url,
                    "status": response.status_code,
                    "response_preview": response_preview or None,
                },
            )
        ],
    )
