"""
Webhook API: inbound receiver and webhook inspection.

POST /api/webhooks/{source}
  400 invalid JSON, 401 authentication failure, 422 contract failure,
  202 ``{webhook_id, run_id}`` when accepted
GET  /api/webhooks?source&run_id&limit
GET  /api/webhooks/statistics?source&run_id
GET  /api/webhooks/{webhook_id}/report
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from pipewatch.api.deps import get_store, get_webhook_pipeline
from pipewatch.schemas.schemas import WebhookAccepted, WebhookRejected
from pipewatch.services.store import RecordKind, Store
from pipewatch.services.webhook_pipeline import WebhookPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{source}", status_code=202, response_model=WebhookAccepted)
async def receive_webhook(
    source: str,
    request: Request,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
):
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.info("Rejected %s webhook with invalid JSON: %s", source, exc)
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    result = await pipeline.intercept(source, payload, dict(request.headers), raw)
    record = result.record
    if result.accepted:
        return WebhookAccepted(webhook_id=record.id, run_id=result.record.run_id)

    if result.category == "authentication":
        detail = "; ".join(record.authentication.errors) or "Authentication failed"
    else:
        detail = "; ".join(record.validation.errors) or "Payload validation failed"
    body = WebhookRejected(
        detail=detail,
        webhook_id=record.id,
        run_id=record.run_id,
        error_category=result.category,
    )
    return JSONResponse(status_code=result.status_code, content=body.model_dump())


@router.get("")
async def list_webhooks(
    source: str | None = Query(None),
    run_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    store: Store = Depends(get_store),
) -> list[dict]:
    records = await store.list(RecordKind.WEBHOOK, record_type=source, run_id=run_id, limit=limit)
    return [r.model_dump(mode="json") for r in records]


@router.get("/statistics")
async def webhook_statistics(
    source: str | None = Query(None),
    run_id: str | None = Query(None),
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
) -> dict:
    stats = await pipeline.get_webhook_statistics(run_id=run_id, source=source)
    return stats.to_dict()


@router.get("/{webhook_id}/report")
async def webhook_error_report(
    webhook_id: str,
    pipeline: WebhookPipeline = Depends(get_webhook_pipeline),
) -> dict:
    return await pipeline.validator.generate_error_report(webhook_id)
