"""
Ingestion core: one delivery in, one outcome out.

Transport-independent. The HTTP router (and anything else that receives
deliveries) passes the source name, the raw body bytes and the headers,
and renders the ``IngestResult`` or the raised ``AppException``.
"""
import enum
from dataclasses import dataclass
from typing import Mapping

from webhook_gateway.core.exceptions import (
    MalformedPayloadError,
    StorageFailureError,
    UnsupportedSourceError,
    WebhookAuthenticationError,
)
from webhook_gateway.core.logging import get_correlation_id, get_logger
from webhook_gateway.core.metrics import MetricsSink, NullMetrics
from webhook_gateway.domain.events import Source
from webhook_gateway.domain.normalizers import decode_payload, normalize
from webhook_gateway.domain.services.batch_queue import BatchQueue, EnqueueStatus
from webhook_gateway.domain.services.signature_service import SignatureVerifier

logger = get_logger(__name__)

# Header naming the event type, where the provider sends one
EVENT_TYPE_HEADERS = {
    Source.GITHUB: "x-github-event",
    Source.LINEAR: "linear-event",
}


class IngestStatus(str, enum.Enum):
    CHALLENGE = "challenge"
    QUEUED = "queued"
    STORED = "stored"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    source: Source
    challenge: str | None = None
    event_type: str | None = None
    event_hash: str | None = None
    delivery_id: str | None = None


def resolve_source(name: str | Source) -> Source:
    if isinstance(name, Source):
        return name
    try:
        return Source((name or "").lower())
    except ValueError:
        raise UnsupportedSourceError(name)


class IngestionService:
    def __init__(
        self,
        verifier: SignatureVerifier,
        queue: BatchQueue,
        metrics: MetricsSink | None = None,
    ) -> None:
        self.verifier = verifier
        self.queue = queue
        self.metrics = metrics or NullMetrics()

    async def ingest(self, source: str | Source, raw_body: bytes, headers: Mapping[str, str]) -> IngestResult:
        """
        Verify, normalize and enqueue one delivery.

        Raises:
            UnsupportedSourceError: unknown provider name
            MalformedPayloadError: empty or undecodable body, missing envelope fields
            WebhookAuthenticationError: signature missing, invalid or expired
            StorageFailureError: immediate write failed (batching disabled)
        """
        self.metrics.increment("requests_received")
        source = resolve_source(source)
        lowered = {key.lower(): value for key, value in headers.items()}

        if not raw_body:
            self.metrics.increment("malformed_payloads")
            raise MalformedPayloadError(source.value, "empty body")

        verification = self.verifier.verify(source, raw_body, lowered)
        if not verification.ok:
            self.metrics.increment("auth_failures")
            raise WebhookAuthenticationError(source.value, verification.reason or "signature mismatch")

        if verification.challenge is not None:
            self.metrics.increment("challenges_answered")
            logger.info("Answered url_verification challenge", extra_data={"source": source.value})
            return IngestResult(IngestStatus.CHALLENGE, source, challenge=verification.challenge)

        try:
            payload = decode_payload(source, raw_body, lowered.get("content-type"))
            event = normalize(
                source,
                lowered.get(EVENT_TYPE_HEADERS.get(source, "")),
                payload,
                headers=lowered,
                request_id=get_correlation_id(),
            )
        except MalformedPayloadError as e:
            self.metrics.increment("malformed_payloads")
            logger.warning(
                "Rejected malformed payload",
                extra_data={"source": source.value, "reason": e.details.get("reason")},
            )
            raise

        outcome = await self.queue.enqueue(event)

        if outcome.status is EnqueueStatus.FAILED:
            store_result = outcome.store_result
            raise StorageFailureError(
                f"Event could not be stored: {store_result.error}",
                transient=bool(store_result.transient),
                details={
                    "event_hash": event.event_hash,
                    "queued_for_retry": store_result.failed_event_id is not None,
                },
            )

        logger.info(
            "Webhook accepted",
            extra_data={
                "source": source.value,
                "event_type": event.event_type,
                "action": event.action,
                "delivery_id": event.delivery_id,
                "status": outcome.status.value,
            },
        )
        return IngestResult(
            IngestStatus(outcome.status.value),
            source,
            event_type=event.event_type,
            event_hash=event.event_hash,
            delivery_id=event.delivery_id,
        )
