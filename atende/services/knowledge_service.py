"""Training-data chunking, embedding and similarity retrieval."""

import math
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy.orm import Session

from atende.config import settings
from atende.database import utcnow
from atende.logging_config import get_logger
from atende.models import TrainingChunk, TrainingSource
from atende.services.alert_service import alert_warning
from atende.services.result import Result

logger = get_logger("knowledge_service")

Embedder = Callable[[str], Awaitable[List[float]]]

CHARS_PER_TOKEN = 4
SENTENCE_BREAKS = (". ", "! ", "? ", "\n", "; ")


@dataclass
class RetrievedChunk:
    chunk_id: object
    source_id: object
    source_title: str
    text: str
    similarity: float


def chunk_spans(
    text: str,
    chunk_tokens: int = 500,
    overlap_tokens: int = 100,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[tuple[int, int]]:
    """Return (start, end) offsets of overlapping chunks of ``text``.

    A window ends at the last sentence break found in its back half,
    otherwise at the hard size limit. The next window starts ``overlap``
    characters before the previous end, always strictly after the previous
    start.
    """
    if not text:
        return []
    max_chars = max(chunk_tokens * chars_per_token, 1)
    overlap = max(min(overlap_tokens * chars_per_token, max_chars - 1), 0)

    spans: List[tuple[int, int]] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            floor = start + max_chars // 2
            best = -1
            for marker in SENTENCE_BREAKS:
                position = text.rfind(marker, floor, end)
                if position != -1:
                    best = max(best, position + len(marker))
            if best > start:
                end = best
        spans.append((start, end))
        if end >= length:
            break
        start = max(end - overlap, start + 1)
    return spans


def split_into_chunks(
    text: str,
    chunk_tokens: int = 500,
    overlap_tokens: int = 100,
    chars_per_token: int = CHARS_PER_TOKEN,
) -> List[str]:
    return [text[start:end] for start, end in chunk_spans(text, chunk_tokens, overlap_tokens, chars_per_token)]


def clean_training_text(title: str, content: str) -> str:
    text = f"{title}\n\n{content}" if title else content
    text = re.sub(r"[ \t\r\f\v]+", " ", text or "")
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank_chunks(
    query_embedding: Sequence[float],
    candidates: Sequence[TrainingChunk],
    *,
    top_k: int = 5,
    threshold: float = 0.3,
) -> List[RetrievedChunk]:
    scored = []
    for chunk in candidates:
        similarity = cosine_similarity(query_embedding, chunk.embedding or [])
        if similarity < threshold:
            continue
        scored.append(
            RetrievedChunk(
                chunk_id=chunk.id,
                source_id=chunk.source_id,
                source_title=chunk.source.title if chunk.source else "",
                text=chunk.chunk_text,
                similarity=similarity,
            )
        )
    scored.sort(key=lambda item: item.similarity, reverse=True)
    return scored[: max(top_k, 0)]


async def index_training_source(db: Session, source: TrainingSource, embed: Embedder) -> Result[int]:
    """Rebuild chunks and embeddings for one source.

    The source only reaches "completed" after every chunk has its
    embedding; any embedding failure leaves no chunks and status "error".
    """
    source_id = source.id
    source.embedding_status = "processing"
    db.query(TrainingChunk).filter(TrainingChunk.source_id == source_id).delete(synchronize_session=False)
    db.commit()

    text = clean_training_text(source.title, source.content)
    chunks = split_into_chunks(text, settings.chunk_tokens, settings.chunk_overlap_tokens)
    try:
        for index, chunk_text in enumerate(chunks):
            embedding = await embed(chunk_text)
            db.add(
                TrainingChunk(
                    source_id=source_id,
                    chunk_index=index,
                    chunk_text=chunk_text,
                    embedding=embedding,
                )
            )
        source.embedding_status = "completed"
        source.updated_at = utcnow()
        db.commit()
    except Exception as exc:
        db.rollback()
        source = db.get(TrainingSource, source_id)
        source.embedding_status = "error"
        db.commit()
        logger.error(
            "Training source indexing failed",
            extra={"context": {"source_id": str(source_id), "error": str(exc)}},
        )
        alert_warning("Training indexing failed", {"source_id": str(source_id), "error": str(exc)[:200]})
        return Result.from_exception(exc, code="embedding_failed")

    logger.info(
        "Training source indexed",
        extra={"context": {"source_id": str(source_id), "chunks": len(chunks)}},
    )
    return Result.success(len(chunks))


async def index_agent_training(db: Session, agent_id, embed: Embedder) -> dict:
    """Index every pending source of an agent; one failure does not stop the rest."""
    sources = (
        db.query(TrainingSource)
        .filter(TrainingSource.agent_id == agent_id, TrainingSource.embedding_status == "pending")
        .order_by(TrainingSource.created_at)
        .all()
    )
    summary = {"processed": 0, "failed": 0, "chunks": 0}
    for source in sources:
        result = await index_training_source(db, source, embed)
        if result.ok:
            summary["processed"] += 1
            summary["chunks"] += result.value
        else:
            summary["failed"] += 1
    return summary


def _agent_chunks(db: Session, agent_id) -> List[TrainingChunk]:
    return (
        db.query(TrainingChunk)
        .join(TrainingSource, TrainingChunk.source_id == TrainingSource.id)
        .filter(TrainingSource.agent_id == agent_id, TrainingSource.embedding_status == "completed")
        .all()
    )


def has_embeddings(db: Session, agent_id) -> bool:
    return (
        db.query(TrainingChunk.id)
        .join(TrainingSource, TrainingChunk.source_id == TrainingSource.id)
        .filter(TrainingSource.agent_id == agent_id, TrainingSource.embedding_status == "completed")
        .first()
        is not None
    )


async def search_relevant_chunks(
    db: Session,
    agent_id,
    query: str,
    embed: Embedder,
    *,
    top_k: Optional[int] = None,
    threshold: Optional[float] = None,
) -> List[RetrievedChunk]:
    candidates = _agent_chunks(db, agent_id)
    if not candidates:
        return []
    query_embedding = await embed(query)
    return rank_chunks(
        query_embedding,
        candidates,
        top_k=settings.rag_top_k if top_k is None else top_k,
        threshold=settings.rag_threshold if threshold is None else threshold,
    )


def format_chunks_context(chunks: Sequence[RetrievedChunk]) -> str:
    """Format retrieved chunks for the system prompt."""
    if not chunks:
        return ""
    parts = [f"[Fonte {i}: {chunk.source_title}]\n{chunk.text}" for i, chunk in enumerate(chunks, start=1)]
    return "\n\n---\n\n".join(parts)


def fallback_training_text(db: Session, agent_id, max_chars: Optional[int] = None) -> str:
    """All raw training text of an agent, cut at ``max_chars``."""
    max_chars = settings.fallback_training_chars if max_chars is None else max_chars
    sources = (
        db.query(TrainingSource)
        .filter(TrainingSource.agent_id == agent_id)
        .order_by(TrainingSource.created_at)
        .all()
    )
    text = "\n\n".join(f"### {source.title}\n{source.content}" for source in sources if source.content)
    return text[:max_chars]


async def build_knowledge_context(db: Session, agent_id, message: str, embed: Embedder) -> str:
    """Grounding text for one customer message.

    Uses similarity retrieval when the agent has embeddings, otherwise all
    raw training text. Retrieval errors yield an empty context.
    """
    try:
        if not has_embeddings(db, agent_id):
            return fallback_training_text(db, agent_id)
        chunks = await search_relevant_chunks(db, agent_id, message, embed)
        logger.info(
            f"Knowledge search: found {len(chunks)} chunks for '{message[:30]}...'",
            extra={"context": {"agent_id": str(agent_id)}},
        )
        return format_chunks_context(chunks)
    except Exception as exc:
        db.rollback()
        logger.warning(
            "Knowledge retrieval failed, continuing without context",
            extra={"context": {"agent_id": str(agent_id), "error": str(exc)}},
        )
        return ""
