"""
Provider webhook endpoint: HTTP adapter over ``IngestionService``.

Only request/response marshaling lives here. The raw body is read before
anything parses it, since signatures cover the exact bytes.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from webhook_gateway.api.dependencies.services import get_ingestion_service
from webhook_gateway.core.logging import get_correlation_id
from webhook_gateway.domain.services import IngestionService, IngestResult, IngestStatus

router = APIRouter()


def render_ingest_response(result: IngestResult) -> Response:
    """Slack's url_verification must get the bare challenge string back"""
    if result.status is IngestStatus.CHALLENGE:
        return PlainTextResponse(result.challenge or "", status_code=200)

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "status": result.status.value,
            "source": result.source.value,
            "event": result.event_type,
            "event_hash": result.event_hash,
            "request_id": get_correlation_id(),
        },
    )


@router.post(
    "/{source}",
    summary="Receive a provider webhook",
    description=(
        "Accepts deliveries from GitHub, Linear and Slack. The signature is "
        "verified against the raw body, the payload is normalized and queued "
        "for storage. Redelivered events answer 200 with status=duplicate."
    ),
    responses={
        200: {"description": "Accepted (queued, stored or duplicate), or the Slack challenge as text/plain"},
        400: {"description": "Malformed payload"},
        401: {"description": "Signature missing, invalid or expired"},
        404: {"description": "Unsupported source"},
        500: {"description": "Permanent storage failure (batching disabled)"},
        503: {"description": "Transient storage failure (batching disabled)"},
    },
)
async def receive_webhook(
    source: str,
    request: Request,
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> Response:
    raw_body = await request.body()
    result = await ingestion.ingest(source, raw_body, dict(request.headers))
    return render_ingest_response(result)
