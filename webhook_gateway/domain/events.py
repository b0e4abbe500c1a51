"""
Canonical event record and its deduplication hash.

``event_hash`` is the one fingerprint used everywhere: the in-memory
recent-event window and the unique constraint on ``webhook_events`` both key
on it, so "duplicate" means the same thing at both layers.
"""
import enum
import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from webhook_gateway.core.clock import utcnow


class Source(str, enum.Enum):
    GITHUB = "github"
    LINEAR = "linear"
    SLACK = "slack"


# Envelope keys that change between provider retries of the same delivery
VOLATILE_PAYLOAD_KEYS: dict[Source, frozenset[str]] = {
    Source.GITHUB: frozenset(),
    Source.LINEAR: frozenset({"webhookTimestamp"}),
    Source.SLACK: frozenset(),
}


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def payload_digest(source: Source, payload: dict[str, Any]) -> str:
    volatile = VOLATILE_PAYLOAD_KEYS.get(source, frozenset())
    stable = {k: v for k, v in payload.items() if k not in volatile}
    return hashlib.sha256(canonical_json(stable).encode("utf-8")).hexdigest()


def compute_event_hash(
    *,
    source: Source,
    event_type: str,
    action: str | None,
    delivery_id: str | None,
    repository: str | None,
    actor: str | None,
    target_entity_id: str | None,
    payload: dict[str, Any],
) -> str:
    """SHA-256 over the identifying fields plus a digest of the payload.

    Ingestion time is deliberately absent; a provider retry of the same
    delivery must hash identically.
    """
    material = {
        "source": source.value,
        "event_type": event_type,
        "action": action,
        "delivery_id": delivery_id,
        "repository": repository,
        "actor": actor,
        "target_entity_id": target_entity_id,
        "payload": payload_digest(source, payload),
    }
    return hashlib.sha256(canonical_json(material).encode("utf-8")).hexdigest()


class NormalizedEvent(BaseModel):
    """Provider-agnostic event. Built once by the normalizer, never mutated."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    source: Source
    event_type: str
    raw_event_type: str | None = None
    action: str | None = None
    payload: dict[str, Any]

    repository: str | None = None
    repository_id: str | None = None
    organization: str | None = None
    organization_id: str | None = None

    actor: str | None = None
    actor_id: str | None = None
    actor_type: str | None = None
    actor_email: str | None = None

    channel: str | None = None
    channel_id: str | None = None
    channel_type: str | None = None

    target_entity: str | None = None
    target_entity_id: str | None = None
    target_entity_type: str | None = None

    delivery_id: str | None = None
    webhook_id: str | None = None
    request_id: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)
    additional_context: dict[str, Any] = Field(default_factory=dict)

    timestamp: datetime
    created_at: datetime = Field(default_factory=utcnow)
    event_hash: str = Field(min_length=64, max_length=64)

    def to_row(self) -> dict[str, Any]:
        """Column values for ``WebhookEvent``"""
        data = self.model_dump(exclude={"metadata"})
        data["source"] = self.source.value
        data["event_metadata"] = self.metadata
        return data

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-safe dump, reloadable with ``NormalizedEvent.model_validate``"""
        return self.model_dump(mode="json")
