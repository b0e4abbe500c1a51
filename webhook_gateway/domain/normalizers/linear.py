"""
Linear payload extraction.

Linear posts ``{"action", "type", "data", "actor", "organizationId", ...}``.
The team plays the role a repository plays for GitHub.
"""
from typing import Any, Mapping

from webhook_gateway.core.exceptions import MalformedPayloadError
from webhook_gateway.domain.events import Source
from webhook_gateway.domain.normalizers.helpers import (
    as_id,
    as_list,
    as_mapping,
    as_text,
    dig,
    parse_timestamp,
    preview,
)
from webhook_gateway.domain.normalizers.registry import register, register_provider

ACTIVITY_NAMES: dict[str, dict[str, str]] = {
    "Issue": {"create": "issue_created", "update": "issue_updated", "remove": "issue_deleted"},
    "Comment": {"create": "comment_created", "update": "comment_updated", "remove": "comment_deleted"},
    "Project": {"create": "project_created", "update": "project_updated", "remove": "project_deleted"},
    "ProjectUpdate": {"create": "project_update_created", "update": "project_update_edited"},
    "Cycle": {"create": "cycle_created", "update": "cycle_updated", "remove": "cycle_deleted"},
    "User": {"create": "user_created", "update": "user_updated", "remove": "user_removed"},
    "IssueLabel": {"create": "label_created", "update": "label_updated", "remove": "label_deleted"},
    "Label": {"create": "label_created", "update": "label_updated", "remove": "label_deleted"},
    "WorkflowState": {"create": "state_created", "update": "state_updated", "remove": "state_deleted"},
}

# Issue updates are named after the field that changed, when it is one of these
_ISSUE_FIELD_ACTIVITIES = {
    "stateId": "issue_state_changed",
    "assigneeId": "issue_assignee_changed",
    "priority": "issue_priority_changed",
    "estimate": "issue_estimate_changed",
    "dueDate": "issue_due_date_changed",
    "parentId": "issue_parent_changed",
    "projectId": "issue_project_changed",
    "cycleId": "issue_cycle_changed",
}


def activity(event_type: str, action: str | None) -> str:
    names = ACTIVITY_NAMES.get(event_type, {})
    if action in names:
        return names[action]
    return f"{event_type.lower()}_{action}" if action else event_type.lower()


def _actor(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    data = as_mapping(payload.get("data"))
    for candidate in (payload.get("actor"), data.get("user"), data.get("creator")):
        mapping = as_mapping(candidate)
        if mapping:
            return mapping
    return {}


def envelope(event_type_header: str | None, payload: Mapping[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
    entity_type = as_text(payload.get("type"))
    if not entity_type:
        raise MalformedPayloadError("linear", "missing 'type'", field="type")

    data = as_mapping(payload.get("data"))
    team = as_mapping(data.get("team"))
    actor = _actor(payload)

    return {
        "event_type": entity_type,
        "raw_event_type": event_type_header or headers.get("linear-event") or entity_type,
        "action": as_text(payload.get("action")),
        "delivery_id": headers.get("linear-delivery") or headers.get("x-linear-delivery"),
        "webhook_id": as_id(payload.get("webhookId")),
        "repository": as_text(team.get("name")) or as_text(team.get("key")),
        "repository_id": as_id(team.get("id")) or as_id(data.get("teamId")),
        "organization_id": as_id(payload.get("organizationId")),
        "actor": as_text(actor.get("name")) or as_text(actor.get("displayName")),
        "actor_id": as_id(actor.get("id")) or as_id(data.get("userId")) or as_id(data.get("creatorId")),
        "actor_type": as_text(actor.get("type")) or ("user" if actor else None),
        "actor_email": as_text(actor.get("email")),
        "timestamp": parse_timestamp(payload.get("createdAt")) or parse_timestamp(payload.get("webhookTimestamp")),
        "metadata": {"url": payload.get("url")} if payload.get("url") else {},
    }


@register(Source.LINEAR, "Issue")
def extract_issue(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    updated_from = as_mapping(payload.get("updatedFrom"))
    changed = sorted(k for k in updated_from if k not in ("updatedAt", "sortOrder"))

    field_activity = None
    if payload.get("action") == "update":
        field_activity = next((_ISSUE_FIELD_ACTIVITIES[k] for k in changed if k in _ISSUE_FIELD_ACTIVITIES), None)

    return {
        "target_entity": as_text(data.get("title")) or as_text(data.get("identifier")),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "issue",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "activity": field_activity,
        "additional_context": {
            "identifier": data.get("identifier"),
            "number": data.get("number"),
            "priority": data.get("priority"),
            "estimate": data.get("estimate"),
            "state": dig(data, "state", "name"),
            "assignee": dig(data, "assignee", "name"),
            "labels": [dig(label, "name") for label in as_list(data.get("labels")) if dig(label, "name")],
            "changed_fields": changed,
            "url": data.get("url"),
        },
    }


@register(Source.LINEAR, "Comment")
def extract_comment(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    issue = as_mapping(data.get("issue"))
    return {
        "target_entity": as_text(issue.get("title")) or preview(data.get("body"), 100),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "comment",
        "timestamp": parse_timestamp(data.get("updatedAt") or data.get("createdAt")),
        "additional_context": {
            "issue_id": data.get("issueId") or issue.get("id"),
            "issue_identifier": issue.get("identifier"),
            "body_preview": preview(data.get("body")),
        },
    }


@register(Source.LINEAR, "Project")
def extract_project(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    return {
        "target_entity": as_text(data.get("name")),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "project",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "additional_context": {
            "state": data.get("state"),
            "progress": data.get("progress"),
            "target_date": data.get("targetDate"),
            "lead": dig(data, "lead", "name"),
        },
    }


@register(Source.LINEAR, "Cycle")
def extract_cycle(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    number = data.get("number")
    return {
        "target_entity": as_text(data.get("name")) or (f"Cycle {number}" if number is not None else None),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "cycle",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "additional_context": {
            "number": number,
            "starts_at": data.get("startsAt"),
            "ends_at": data.get("endsAt"),
            "progress": data.get("progress"),
        },
    }


@register(Source.LINEAR, "User")
def extract_user(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    return {
        "target_entity": as_text(data.get("name")) or as_text(data.get("displayName")),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "user",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "additional_context": {
            "active": data.get("active"),
            "admin": data.get("admin"),
        },
    }


@register(Source.LINEAR, "IssueLabel", "Label")
def extract_label(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    return {
        "target_entity": as_text(data.get("name")),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "label",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "additional_context": {"color": data.get("color")},
    }


@register(Source.LINEAR, "WorkflowState")
def extract_workflow_state(payload: Mapping[str, Any]) -> dict[str, Any]:
    data = as_mapping(payload.get("data"))
    return {
        "target_entity": as_text(data.get("name")),
        "target_entity_id": as_id(data.get("id")),
        "target_entity_type": "workflow_state",
        "timestamp": parse_timestamp(data.get("updatedAt")),
        "additional_context": {
            "state_type": data.get("type"),
            "position": data.get("position"),
        },
    }


register_provider(Source.LINEAR, envelope=envelope, activity=activity)
