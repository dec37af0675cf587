"""Operator endpoints: queue, circuits, timeouts, indexing, webhook tests."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from atende.database import get_db
from atende.models import Agent, Webhook
from atende.runtime import Runtime
from atende.routers.dependencies import get_runtime, require_admin_token
from atende.services.knowledge_service import index_agent_training
from atende.services.queue_service import queue_stats
from atende.services.resilience.rate_limiter import rate_limit
from atende.services.timeout_monitor import ConversationTimeoutMonitor

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/queue/stats", dependencies=[Depends(rate_limit("admin"))])
def get_queue_stats(db: Session = Depends(get_db)):
    return {"status": "ok", "jobs": queue_stats(db)}


@router.get("/circuits", dependencies=[Depends(rate_limit("admin"))])
def get_circuits(runtime: Runtime = Depends(get_runtime)):
    return {"circuits": runtime.circuits()}


@router.post("/timeouts/run", dependencies=[Depends(rate_limit("admin"))])
async def run_timeouts(db: Session = Depends(get_db), runtime: Runtime = Depends(get_runtime)):
    """Run one inactivity monitor pass now."""
    results = await ConversationTimeoutMonitor(runtime).run(db)
    return {
        "checked": len(results),
        "results": [
            {"conversation_id": str(result.conversation_id), "action": result.action.value, "reason": result.reason}
            for result in results
        ],
    }


@router.post("/agents/{agent_id}/index", dependencies=[Depends(rate_limit("upload"))])
async def index_agent(agent_id: UUID, db: Session = Depends(get_db), runtime: Runtime = Depends(get_runtime)):
    if db.get(Agent, agent_id) is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    summary = await index_agent_training(db, agent_id, runtime.embed)
    return {"agent_id": str(agent_id), **summary}


@router.post("/webhooks/{webhook_id}/test", dependencies=[Depends(rate_limit("admin"))])
async def test_webhook(webhook_id: UUID, db: Session = Depends(get_db), runtime: Runtime = Depends(get_runtime)):
    webhook = db.get(Webhook, webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    result = await runtime.webhooks.send_test(db, webhook)
    return {
        "success": result.success,
        "status_code": result.status_code,
        "attempts": result.attempts,
        "error": result.error,
    }
