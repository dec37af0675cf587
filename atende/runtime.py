"""Process-wide services, built once at startup and closed at shutdown."""

from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis_async
from sqlalchemy.orm import Session

from atende.config import Settings
from atende.database import SessionLocal
from atende.logging_config import get_logger
from atende.services.alert_service import alert_critical
from atende.services.channel import ChannelAdapter, WPPConnectAdapter
from atende.services.customer_memory_service import CustomerMemoryService
from atende.services.llm import LLMProvider, OpenAIProvider
from atende.services.orchestrator import FunctionCallingOrchestrator
from atende.services.realtime_bridge import RealtimeBridge
from atende.services.resilience import CHANNEL_RETRY, OPENAI_RETRY, CircuitBreaker, RateLimiter, retry
from atende.services.tasks import TaskSupervisor
from atende.services.webhook_dispatcher import WebhookDispatcher

logger = get_logger("runtime")


def _alert_circuit_open(breaker: CircuitBreaker) -> None:
    alert_critical(f"Circuit '{breaker.name}' opened", breaker.stats())


@dataclass
class Runtime:
    settings: Settings
    session_factory: Callable[[], Session]
    llm: LLMProvider
    channel: ChannelAdapter
    completion_breaker: CircuitBreaker
    channel_breaker: CircuitBreaker
    rate_limiter: RateLimiter
    realtime: RealtimeBridge
    tasks: TaskSupervisor
    webhooks: WebhookDispatcher
    memory: CustomerMemoryService
    orchestrator: FunctionCallingOrchestrator
    redis: Optional[object] = None

    async def embed(self, text: str) -> list[float]:
        return await retry(lambda: self.completion_breaker.execute(lambda: self.llm.embed(text)), OPENAI_RETRY)

    async def send_text(self, session: str, recipient: str, text: str) -> bool:
        return await retry(
            lambda: self.channel_breaker.execute(lambda: self.channel.send_text(session, recipient, text)),
            CHANNEL_RETRY,
        )

    async def send_file(self, session: str, recipient: str, url: str, file_name: str, caption: Optional[str] = None) -> bool:
        return await retry(
            lambda: self.channel_breaker.execute(
                lambda: self.channel.send_file(session, recipient, url, file_name, caption)
            ),
            CHANNEL_RETRY,
        )

    async def send_image(self, session: str, recipient: str, url: str, caption: Optional[str] = None) -> bool:
        return await retry(
            lambda: self.channel_breaker.execute(lambda: self.channel.send_image(session, recipient, url, caption)),
            CHANNEL_RETRY,
        )

    def circuits(self) -> list[dict]:
        return [self.completion_breaker.stats(), self.channel_breaker.stats()]

    async def close(self) -> None:
        await self.tasks.shutdown()
        for closer in (self.webhooks.close, self.channel.close, self.llm.close, self.realtime.close, self.rate_limiter.close):
            try:
                await closer()
            except Exception as exc:
                logger.warning(f"Runtime close step failed: {exc}")
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as exc:
                logger.warning(f"Redis close failed: {exc}")
        logger.info("Runtime closed")


def build_runtime(
    settings: Settings,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    llm: Optional[LLMProvider] = None,
    channel: Optional[ChannelAdapter] = None,
    redis_client=None,
) -> Runtime:
    if redis_client is None and settings.redis_url:
        redis_client = redis_async.from_url(settings.redis_url, socket_timeout=2.0, decode_responses=True)

    llm = llm or OpenAIProvider(
        settings.openai_api_key,
        settings.chat_model,
        embedding_model=settings.embedding_model,
        base_url=settings.openai_base_url,
        timeout_seconds=settings.llm_timeout_seconds,
    )
    channel = channel or WPPConnectAdapter(
        settings.wpp_base_url,
        settings.wpp_secret,
        timeout_seconds=settings.wpp_timeout_seconds,
    )
    completion_breaker = CircuitBreaker(
        "openai", failure_threshold=3, reset_timeout=30.0, success_threshold=1, on_open=_alert_circuit_open
    )
    channel_breaker = CircuitBreaker(
        "wppconnect", failure_threshold=5, reset_timeout=60.0, success_threshold=2, on_open=_alert_circuit_open
    )
    tasks = TaskSupervisor()
    runtime = Runtime(
        settings=settings,
        session_factory=session_factory,
        llm=llm,
        channel=channel,
        completion_breaker=completion_breaker,
        channel_breaker=channel_breaker,
        rate_limiter=RateLimiter(redis_client),
        realtime=RealtimeBridge(redis_client),
        tasks=tasks,
        webhooks=WebhookDispatcher(session_factory, supervisor=tasks),
        memory=CustomerMemoryService(
            llm,
            model=settings.summary_model,
            max_products=settings.memory_max_products,
            breaker=completion_breaker,
            retry_options=OPENAI_RETRY,
        ),
        orchestrator=FunctionCallingOrchestrator(
            llm,
            completion_breaker,
            model=settings.chat_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        ),
        redis=redis_client,
    )
    logger.info("Runtime built", extra={"context": {"redis": bool(redis_client)}})
    return runtime
