"""Picks the persona that handles a new conversation."""

import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from atende.logging_config import get_logger
from atende.models import Agent

logger = get_logger("agent_router")


@dataclass
class RoutingDecision:
    agent: Optional[Agent]
    reason: str  # no_agents, single_agent, keyword_match, default, highest_priority, error
    match_count: int = 0

    @property
    def agent_id(self):
        return self.agent.id if self.agent else None


def normalize_text(text: str) -> str:
    """Lowercase, strip diacritics and surrounding whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return stripped.strip()


def count_keyword_matches(message: str, keywords: Iterable[str]) -> int:
    normalized_message = normalize_text(message)
    count = 0
    for keyword in keywords or []:
        normalized_keyword = normalize_text(keyword)
        if normalized_keyword and normalized_keyword in normalized_message:
            count += 1
    return count


def select_agent(agents: Sequence[Agent], message: str) -> RoutingDecision:
    """Choose among active agents, given in a stable order.

    Keyword matches win (ties go to higher priority, then list order), then
    the default agent, then the highest priority.
    """
    active = [agent for agent in agents if agent.is_active]
    if not active:
        return RoutingDecision(agent=None, reason="no_agents")
    if len(active) == 1:
        return RoutingDecision(agent=active[0], reason="single_agent")

    best: Optional[Agent] = None
    best_count = 0
    for agent in active:
        count = count_keyword_matches(message, agent.trigger_keywords or [])
        if count == 0:
            continue
        if best is None or count > best_count or (count == best_count and (agent.priority or 0) > (best.priority or 0)):
            best, best_count = agent, count
    if best is not None:
        return RoutingDecision(agent=best, reason="keyword_match", match_count=best_count)

    default = next((agent for agent in active if agent.is_default), None)
    if default is not None:
        return RoutingDecision(agent=default, reason="default")

    top = active[0]
    for agent in active[1:]:
        if (agent.priority or 0) > (top.priority or 0):
            top = agent
    return RoutingDecision(agent=top, reason="highest_priority")


def route_conversation(db: Session, company_id, message: str) -> RoutingDecision:
    """Load the company's active agents and select one. Never raises."""
    try:
        agents = (
            db.query(Agent)
            .filter(Agent.company_id == company_id, Agent.is_active.is_(True))
            .order_by(Agent.created_at, Agent.id)
            .all()
        )
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Agent routing failed",
            extra={"context": {"company_id": str(company_id), "error": str(exc)}},
        )
        return RoutingDecision(agent=None, reason="error")

    decision = select_agent(agents, message)
    logger.info(
        "Agent selected",
        extra={
            "context": {
                "company_id": str(company_id),
                "agent_id": str(decision.agent_id) if decision.agent_id else None,
                "reason": decision.reason,
                "match_count": decision.match_count,
            }
        },
    )
    return decision
