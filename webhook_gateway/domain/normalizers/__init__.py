"""
Payload normalization: provider body -> ``NormalizedEvent``.

Provider modules register themselves on import; ``normalize`` only consults
the registry, so it never sees HTTP objects.
"""
import json
from datetime import datetime
from typing import Any, Mapping
from urllib.parse import parse_qs

from webhook_gateway.core.clock import utcnow
from webhook_gateway.core.exceptions import MalformedPayloadError
from webhook_gateway.domain.events import NormalizedEvent, Source, compute_event_hash
from webhook_gateway.domain.normalizers import github, linear, slack  # noqa: F401  (registration)
from webhook_gateway.domain.normalizers.registry import get_extractor, get_provider, registered_event_types

__all__ = ["decode_payload", "normalize", "registered_event_types"]

# Column widths in webhook_events
_FIELD_LIMITS = {
    "event_type": 100,
    "raw_event_type": 100,
    "action": 100,
    "repository": 255,
    "repository_id": 100,
    "organization": 255,
    "organization_id": 100,
    "actor": 255,
    "actor_id": 100,
    "actor_type": 50,
    "actor_email": 255,
    "channel": 255,
    "channel_id": 100,
    "channel_type": 50,
    "target_entity": 500,
    "target_entity_id": 255,
    "target_entity_type": 100,
    "delivery_id": 255,
    "webhook_id": 255,
}


def _decode_slack_form(source: Source, raw_body: bytes) -> dict[str, Any]:
    try:
        form = {
            key: values[-1]
            for key, values in parse_qs(raw_body.decode("utf-8"), keep_blank_values=True).items()
        }
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(source.value, f"body is not UTF-8: {e}") from e

    if "payload" in form:
        try:
            payload = json.loads(form["payload"])
        except ValueError as e:
            raise MalformedPayloadError(source.value, "interactive payload is not JSON", field="payload") from e
        if not isinstance(payload, dict):
            raise MalformedPayloadError(source.value, "interactive payload must be an object", field="payload")
        return payload

    if "command" in form:
        return {**form, "type": "slash_command"}

    return form


def decode_payload(source: Source, raw_body: bytes, content_type: str | None = None) -> dict[str, Any]:
    """Raw bytes to a dict. Slack form bodies (interactivity, slash commands) are unwrapped."""
    media_type = (content_type or "").split(";")[0].strip().lower()
    if source is Source.SLACK and media_type == "application/x-www-form-urlencoded":
        return _decode_slack_form(source, raw_body)

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(source.value, "body is not valid JSON") from e

    if not isinstance(payload, dict):
        raise MalformedPayloadError(source.value, "body must be a JSON object")
    return payload


def _clip(fields: dict[str, Any]) -> None:
    for name, limit in _FIELD_LIMITS.items():
        value = fields.get(name)
        if isinstance(value, str) and len(value) > limit:
            fields[name] = value[:limit]


def normalize(
    source: Source,
    event_type_header: str | None,
    payload: Any,
    *,
    headers: Mapping[str, str] | None = None,
    received_at: datetime | None = None,
    request_id: str | None = None,
) -> NormalizedEvent:
    """Build the canonical event for one decoded delivery.

    Raises ``MalformedPayloadError`` when required envelope fields are
    missing. Unrecognized event shapes still normalize, with the event type
    kept verbatim and no target entity.
    """
    if not isinstance(payload, Mapping):
        raise MalformedPayloadError(source.value, "payload must be an object")

    lowered = {key.lower(): value for key, value in (headers or {}).items()}
    provider = get_provider(source)
    fields = provider.envelope(event_type_header, payload, lowered)

    event_type = fields["event_type"]
    extractor = get_extractor(source, event_type)
    if extractor is not None:
        try:
            details = extractor(payload)
        except (AttributeError, TypeError, ValueError, KeyError) as e:
            raise MalformedPayloadError(source.value, f"unexpected {event_type} shape: {e}") from e
        for key, value in details.items():
            if value is not None:
                fields[key] = value

    received = received_at or utcnow()
    timestamp = fields.pop("timestamp", None) or received
    activity = fields.pop("activity", None) or provider.activity(event_type, fields.get("action"))
    metadata = {**fields.pop("metadata", {}), "activity": activity}
    _clip(fields)

    event_hash = compute_event_hash(
        source=source,
        event_type=fields["event_type"],
        action=fields.get("action"),
        delivery_id=fields.get("delivery_id"),
        repository=fields.get("repository"),
        actor=fields.get("actor"),
        target_entity_id=fields.get("target_entity_id"),
        payload=dict(payload),
    )

    return NormalizedEvent(
        source=source,
        payload=dict(payload),
        metadata=metadata,
        timestamp=timestamp,
        created_at=received,
        request_id=request_id,
        event_hash=event_hash,
        **fields,
    )
