"""Signed, retried delivery of integration events to company endpoints."""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import httpx
from sqlalchemy.orm import Session

from atende.logging_config import get_logger
from atende.models import Webhook, WebhookDeliveryLog
from atende.schemas.webhook import WebhookEvent, WebhookPayload
from atende.services.tasks import TaskSupervisor

logger = get_logger("webhook_dispatcher")

USER_AGENT = "Atende-Webhook/1.0"
RESPONSE_SNIPPET_CHARS = 1000
BACKOFF_SECONDS = 1.0


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


@dataclass(frozen=True)
class WebhookTarget:
    id: object
    url: str
    secret: Optional[str]
    headers: dict
    timeout_seconds: float
    attempts: int

    @classmethod
    def from_model(cls, webhook: Webhook) -> "WebhookTarget":
        return cls(
            id=webhook.id,
            url=webhook.url,
            secret=webhook.secret,
            headers=dict(webhook.headers or {}),
            timeout_seconds=max((webhook.timeout_ms or 10000) / 1000, 0.1),
            attempts=max(webhook.retry_count or 1, 1),
        )


@dataclass
class DeliveryResult:
    webhook_id: object
    success: bool
    attempts: int
    status_code: Optional[int] = None
    response: Optional[str] = None
    error: Optional[str] = None


class WebhookDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client: Optional[httpx.AsyncClient] = None,
        supervisor: Optional[TaskSupervisor] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.client = client or httpx.AsyncClient()
        self.supervisor = supervisor
        self._sleep = sleep

    def emit(self, company_id, event: WebhookEvent, data: dict) -> None:
        """Dispatch in the background; the caller never sees the outcome."""
        if self.supervisor is None:
            raise RuntimeError("WebhookDispatcher.emit needs a TaskSupervisor")
        self.supervisor.spawn(
            self.dispatch(company_id, event, data),
            name=f"webhook:{event.value}",
            context={"company_id": str(company_id), "event": event.value},
        )

    async def dispatch(self, company_id, event: WebhookEvent, data: dict) -> List[DeliveryResult]:
        db = self.session_factory()
        try:
            webhooks = (
                db.query(Webhook)
                .filter(Webhook.company_id == company_id, Webhook.is_active.is_(True))
                .all()
            )
            targets = [WebhookTarget.from_model(webhook) for webhook in webhooks if event.value in (webhook.events or [])]
            if not targets:
                return []
            return await self._deliver_all(db, targets, WebhookPayload(event=event, data=data))
        finally:
            db.close()

    async def send_test(self, db: Session, webhook: Webhook) -> DeliveryResult:
        payload = WebhookPayload(
            event=WebhookEvent.TEST,
            data={"message": "Webhook de teste", "webhookId": str(webhook.id)},
        )
        results = await self._deliver_all(db, [WebhookTarget.from_model(webhook)], payload)
        return results[0]

    async def _deliver_all(self, db: Session, targets: List[WebhookTarget], payload: WebhookPayload) -> List[DeliveryResult]:
        body = payload.to_bytes()
        results = await asyncio.gather(*(self._deliver(target, payload.event, body) for target in targets))
        stored_payload = json.loads(body)
        for result in results:
            db.add(
                WebhookDeliveryLog(
                    webhook_id=result.webhook_id,
                    event=payload.event.value,
                    payload=stored_payload,
                    status_code=result.status_code,
                    response=result.response,
                    success=result.success,
                    attempts=result.attempts,
                    error=result.error,
                )
            )
        db.commit()
        failed = [str(result.webhook_id) for result in results if not result.success]
        logger.info(
            "Webhook event dispatched",
            extra={"context": {"event": payload.event.value, "targets": len(results), "failed": failed}},
        )
        return list(results)

    def _headers(self, target: WebhookTarget, event: WebhookEvent, body: bytes) -> dict:
        headers = dict(target.headers)
        headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Webhook-Event": event.value,
            }
        )
        if target.secret:
            headers["X-Webhook-Signature"] = sign_payload(body, target.secret)
        return headers

    async def _deliver(self, target: WebhookTarget, event: WebhookEvent, body: bytes) -> DeliveryResult:
        headers = self._headers(target, event, body)
        status_code: Optional[int] = None
        response_text: Optional[str] = None
        error: Optional[str] = None

        for attempt in range(1, target.attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.client.post(target.url, content=body, headers=headers),
                    timeout=target.timeout_seconds,
                )
                status_code = response.status_code
                response_text = response.text[:RESPONSE_SNIPPET_CHARS]
                if 200 <= status_code < 300:
                    return DeliveryResult(target.id, True, attempt, status_code, response_text)
                error = f"HTTP {status_code}"
            except asyncio.TimeoutError:
                error = f"Timeout after {target.timeout_seconds}s"
            except httpx.InvalidURL as exc:
                error = f"Invalid URL: {exc}"
                logger.warning(
                    "Webhook URL rejected",
                    extra={"context": {"webhook_id": str(target.id), "error": error}},
                )
                return DeliveryResult(target.id, False, attempt, None, None, error)
            except httpx.HTTPError as exc:
                error = str(exc) or exc.__class__.__name__
            except Exception as exc:
                error = f"{exc.__class__.__name__}: {exc}"

            logger.warning(
                "Webhook delivery attempt failed",
                extra={"context": {"webhook_id": str(target.id), "attempt": attempt, "error": error}},
            )
            if attempt < target.attempts:
                await self._sleep(BACKOFF_SECONDS * attempt)

        return DeliveryResult(target.id, False, target.attempts, status_code, response_text, error)

    async def close(self) -> None:
        await self.client.aclose()
