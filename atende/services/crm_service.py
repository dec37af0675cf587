"""Deal pipeline automation driven by conversation events."""

from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from atende.database import utcnow
from atende.logging_config import get_logger
from atende.models import Deal

logger = get_logger("crm_service")


class DealStage(str, Enum):
    LEAD = "LEAD"
    INTERESTED = "INTERESTED"
    NEGOTIATING = "NEGOTIATING"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


STAGE_ORDER = {
    DealStage.LEAD: 0,
    DealStage.INTERESTED: 1,
    DealStage.NEGOTIATING: 2,
    DealStage.CLOSED_WON: 3,
}

TERMINAL_STAGES = {DealStage.CLOSED_WON, DealStage.CLOSED_LOST}
ADVANCED_STAGES = (DealStage.NEGOTIATING.value, DealStage.CLOSED_WON.value)


def open_deal(db: Session, company_id, customer_phone: str) -> Optional[Deal]:
    return (
        db.query(Deal)
        .filter(
            Deal.company_id == company_id,
            Deal.customer_phone == customer_phone,
            Deal.stage.notin_([stage.value for stage in TERMINAL_STAGES]),
        )
        .order_by(Deal.created_at.desc())
        .first()
    )


def advance_deal(
    db: Session,
    *,
    company_id,
    customer_phone: str,
    stage: DealStage,
    customer_name: Optional[str] = None,
    title: Optional[str] = None,
    value: Optional[float] = None,
    note: Optional[str] = None,
) -> Deal:
    """Move the customer's open deal forward to ``stage``, creating it if needed.

    Stages never move backwards. Does not commit.
    """
    deal = open_deal(db, company_id, customer_phone)
    if deal is None:
        deal = Deal(
            company_id=company_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
            title=title or f"Oportunidade - {customer_name or customer_phone}",
            stage=stage.value,
            value=value,
            notes=note,
        )
        db.add(deal)
        logger.info(
            "Deal created",
            extra={"context": {"company_id": str(company_id), "stage": stage.value}},
        )
    else:
        current = DealStage(deal.stage)
        if STAGE_ORDER.get(stage, 0) > STAGE_ORDER.get(current, 0):
            deal.stage = stage.value
        if customer_name and not deal.customer_name:
            deal.customer_name = customer_name
        if value is not None:
            deal.value = value
        if note:
            deal.notes = f"{deal.notes}\n{note}" if deal.notes else note
        deal.updated_at = utcnow()

    if DealStage(deal.stage) in TERMINAL_STAGES and deal.closed_at is None:
        deal.closed_at = utcnow()
    return deal
