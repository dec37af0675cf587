"""Long-term per-customer memory: summaries, preferences, recent products."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atende.config import settings
from atende.database import ensure_timezone, utcnow
from atende.logging_config import get_logger
from atende.models import CustomerMemory
from atende.services.conversation_service import normalize_phone
from atende.services.llm.base import LLMProvider, LLMResponse
from atende.services.resilience.circuit_breaker import CircuitBreaker
from atende.services.resilience.retry import RetryOptions, retry

logger = get_logger("customer_memory")

SHORT_CONVERSATION_SUMMARY = "Conversa curta sem contexto significativo."
SUMMARY_PREVIEW_CHARS = 200
MAX_PROMPT_PRODUCTS = 3

_SUMMARY_SYSTEM = (
    "Você cria resumos MUITO concisos de conversas para memória de longo prazo. "
    "Escreva 2 a 3 frases com: nome do cliente (se souber), o que ele queria, "
    "produtos mencionados e como terminou. Não invente informações."
)

_MERGE_SYSTEM = (
    "Você combina resumos de conversas em uma memória consolidada de no máximo 3 a 4 frases. "
    "Priorize: nome do cliente, preferências, produtos de interesse e problemas recorrentes. "
    "Descarte detalhes pontuais que não ajudam em atendimentos futuros."
)


@dataclass
class MemoryUpdate:
    company_id: object
    customer_phone: str
    conversation_id: object
    exchange_summary: str
    message_count: int = 0
    customer_name: Optional[str] = None
    products: List[str] = field(default_factory=list)
    preferences: dict = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)


def merge_products(existing: List[str], new: List[str], limit: int) -> List[str]:
    """Union keeping the most recent mention last, trimmed to ``limit``."""
    merged: List[str] = []
    for product in [*(existing or []), *(new or [])]:
        if not product:
            continue
        if product in merged:
            merged.remove(product)
        merged.append(product)
    return merged[-limit:] if limit > 0 else []


def merge_tags(existing: List[str], new: List[str]) -> List[str]:
    merged = list(existing or [])
    for tag in new or []:
        if tag not in merged:
            merged.append(tag)
    return merged


class CustomerMemoryService:
    def __init__(
        self,
        llm: LLMProvider,
        *,
        model: Optional[str] = None,
        max_products: Optional[int] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_options: RetryOptions = RetryOptions(max_retries=0),
    ):
        self.llm = llm
        self.model = model or settings.summary_model
        self.max_products = settings.memory_max_products if max_products is None else max_products
        self.breaker = breaker
        self.retry_options = retry_options

    async def _complete(self, messages: List[dict], max_tokens: int) -> LLMResponse:
        async def call() -> LLMResponse:
            return await self.llm.complete(messages, model=self.model, temperature=0.3, max_tokens=max_tokens)

        if self.breaker is None:
            return await retry(call, self.retry_options)
        return await retry(lambda: self.breaker.execute(call), self.retry_options)

    def get(self, db: Session, company_id, customer_phone: str) -> Optional[CustomerMemory]:
        return (
            db.query(CustomerMemory)
            .filter(
                CustomerMemory.company_id == company_id,
                CustomerMemory.customer_phone == normalize_phone(customer_phone),
            )
            .first()
        )

    async def summarize_exchange(self, messages: List[dict], customer_name: Optional[str] = None) -> str:
        """Summarize ``[{"role": ..., "content": ...}]``; falls back to a truncated transcript."""
        if len(messages) < 2:
            return SHORT_CONVERSATION_SUMMARY

        transcript = "\n".join(
            f"{'Cliente' if message['role'] == 'user' else 'Atendente'}: {message['content']}" for message in messages
        )
        if customer_name:
            transcript = f"Nome do cliente: {customer_name}\n{transcript}"
        try:
            response = await self._complete(
                [
                    {"role": "system", "content": _SUMMARY_SYSTEM},
                    {"role": "user", "content": f"Resuma esta conversa para memória futura:\n\n{transcript}"},
                ],
                max_tokens=150,
            )
            summary = response.content.strip()
            if summary:
                return summary
        except Exception as exc:
            logger.warning("Exchange summary failed", extra={"context": {"error": str(exc)}})
        return transcript[:300]

    async def merge_summaries(self, old: str, new: str) -> str:
        if not old:
            return new
        if not new or new == SHORT_CONVERSATION_SUMMARY:
            return old
        try:
            response = await self._complete(
                [
                    {"role": "system", "content": _MERGE_SYSTEM},
                    {
                        "role": "user",
                        "content": f"Combine estes resumos em um só:\n\nANTERIOR:\n{old}\n\nNOVO:\n{new}",
                    },
                ],
                max_tokens=200,
            )
            merged = response.content.strip()
            if merged:
                return merged
        except Exception as exc:
            logger.warning("Summary merge failed, concatenating", extra={"context": {"error": str(exc)}})
        return f"{old}\n\nAtualização: {new}"

    async def update(self, db: Session, update: MemoryUpdate) -> CustomerMemory:
        """Create or merge the customer's memory and commit."""
        phone = normalize_phone(update.customer_phone)
        memory = self.get(db, update.company_id, phone)
        now = utcnow()

        if memory is None:
            memory = CustomerMemory(
                company_id=update.company_id,
                customer_phone=phone,
                customer_name=update.customer_name,
                summary=update.exchange_summary,
                preferences=dict(update.preferences),
                last_products=merge_products([], update.products, self.max_products),
                tags=merge_tags([], update.tags),
                total_conversations=1,
                total_messages=update.message_count,
                last_conversation_id=update.conversation_id,
                last_contact_at=now,
            )
            try:
                with db.begin_nested():
                    db.add(memory)
                db.commit()
                logger.info("Customer memory created", extra={"context": {"company_id": str(update.company_id)}})
                return memory
            except IntegrityError:
                # created concurrently; merge into that row instead
                memory = self.get(db, update.company_id, phone)

        memory.summary = await self.merge_summaries(memory.summary or "", update.exchange_summary)
        memory.preferences = {**(memory.preferences or {}), **update.preferences}
        memory.last_products = merge_products(memory.last_products or [], update.products, self.max_products)
        memory.tags = merge_tags(memory.tags or [], update.tags)
        memory.total_messages = (memory.total_messages or 0) + update.message_count
        if update.conversation_id is not None and memory.last_conversation_id != update.conversation_id:
            memory.total_conversations = (memory.total_conversations or 0) + 1
            memory.last_conversation_id = update.conversation_id
        if update.customer_name:
            memory.customer_name = update.customer_name
        memory.last_contact_at = now
        db.commit()
        return memory

    @staticmethod
    def format_for_prompt(memory: Optional[CustomerMemory]) -> str:
        if memory is None:
            return ""
        last_contact: Optional[datetime] = ensure_timezone(memory.last_contact_at)
        parts = [
            "=== HISTÓRICO COM ESTE CLIENTE (APENAS REFERÊNCIA) ===",
            "IMPORTANTE: foque na CONVERSA ATUAL. Use este histórico só se o cliente mencionar algo do passado.",
            f"Conversas anteriores: {memory.total_conversations}",
        ]
        if last_contact:
            parts.append(f"Último contato: {last_contact.strftime('%d/%m/%Y')}")
        if memory.customer_name:
            parts.append(f"Nome: {memory.customer_name}")
        if memory.summary:
            summary = memory.summary[:SUMMARY_PREVIEW_CHARS]
            if len(memory.summary) > SUMMARY_PREVIEW_CHARS:
                summary += "..."
            parts.append(f"\nResumo geral (não mencione a menos que relevante): {summary}")
        products = memory.last_products or []
        if 0 < len(products) <= MAX_PROMPT_PRODUCTS:
            parts.append(f"\nProdutos anteriores (apenas referência): {', '.join(products)}")
        parts.append(
            "\nREGRA: responda APENAS sobre o que o cliente pergunta AGORA. Não traga produtos ou assuntos "
            "de conversas passadas a menos que o cliente pergunte."
        )
        return "\n".join(parts)
