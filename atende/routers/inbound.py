from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from atende.database import get_db
from atende.logging_config import get_logger
from atende.schemas.job import GatewayEvent
from atende.services.queue_service import enqueue_job
from atende.services.resilience.rate_limiter import rate_limit

logger = get_logger("routers.inbound")

router = APIRouter(prefix="/inbound", tags=["inbound"])


class InboundResponse(BaseModel):
    success: bool
    queued: bool
    reason: str | None = None
    job_id: str | None = None


@router.post("/{session}", response_model=InboundResponse, dependencies=[Depends(rate_limit("webhook"))])
def receive_gateway_event(session: str, event: GatewayEvent, db: Session = Depends(get_db)):
    """Queue a gateway message event; everything else is acknowledged and dropped."""
    if not event.is_customer_message():
        return InboundResponse(success=True, queued=False, reason="ignored")

    job = enqueue_job(db, event.to_job(event.session or session))
    if job is None:
        return InboundResponse(success=True, queued=False, reason="duplicate")
    logger.info(
        "Inbound message queued",
        extra={"context": {"job_id": str(job.id), "session": job.session_name}},
    )
    return InboundResponse(success=True, queued=True, job_id=str(job.id))
