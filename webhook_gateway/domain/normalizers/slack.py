"""
Slack payload extraction.

Three envelope families arrive on the same endpoint:

* Events API: ``type == "event_callback"`` with the real event under
  ``event``; dispatch uses ``event.type``.
* Interactivity: ``block_actions``, ``view_submission``, ``shortcut``...
  posted as ``payload=<json>`` form fields.
* Slash commands: plain form fields, tagged ``slash_command`` on decode.

The workspace maps to organization; the channel fields are Slack-only.
"""
import re
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

INTERACTION_TYPES = frozenset({
    "block_actions",
    "view_submission",
    "view_closed",
    "shortcut",
    "message_action",
})

ACTIVITY_NAMES = {
    "message": "message_sent",
    "message.message_changed": "message_edited",
    "message.message_deleted": "message_deleted",
    "message.bot_message": "bot_message_sent",
    "message.thread_broadcast": "thread_reply",
    "app_mention": "app_mentioned",
    "reaction_added": "reaction_added",
    "reaction_removed": "reaction_removed",
    "member_joined_channel": "member_joined_channel",
    "member_left_channel": "member_left_channel",
    "channel_created": "channel_created",
    "channel_rename": "channel_renamed",
    "team_join": "team_member_joined",
    "user_change": "user_profile_changed",
    "file_shared": "file_shared",
    "block_actions": "block_action_triggered",
    "view_submission": "modal_submitted",
    "view_closed": "modal_closed",
    "shortcut": "shortcut_triggered",
    "message_action": "message_action_triggered",
    "slash_command": "slash_command_used",
    "url_verification": "url_verification",
}

_CHANNEL_TYPES = {
    "C": "public_channel",
    "G": "private_channel",
    "D": "im",
    "M": "mpim",
}

_USER_MENTION_RE = re.compile(r"<@([UW][A-Z0-9]+)(?:\|[^>]*)?>")
_CHANNEL_MENTION_RE = re.compile(r"<#(C[A-Z0-9]+)(?:\|[^>]*)?>")
_LINK_RE = re.compile(r"<(https?://[^>|]+)(?:\|[^>]*)?>")


def activity(event_type: str, action: str | None) -> str:
    if action and f"{event_type}.{action}" in ACTIVITY_NAMES:
        return ACTIVITY_NAMES[f"{event_type}.{action}"]
    return ACTIVITY_NAMES.get(event_type, event_type)


def channel_type_for(channel_id: str | None, declared: str | None = None) -> str | None:
    """Slack channel IDs encode their kind in the first letter"""
    if declared:
        return {"channel": "public_channel", "group": "private_channel"}.get(declared, declared)
    if not channel_id:
        return None
    return _CHANNEL_TYPES.get(channel_id[0])


def extract_mentions(text: str | None) -> dict[str, list[str]]:
    text = text or ""
    return {
        "users": _USER_MENTION_RE.findall(text),
        "channels": _CHANNEL_MENTION_RE.findall(text),
        "links": _LINK_RE.findall(text),
    }


def _id_or_nested(value: Any) -> str | None:
    """``event.channel``/``event.user`` are IDs on most events and objects on a few"""
    if isinstance(value, Mapping):
        return as_id(value.get("id"))
    return as_id(value)


def envelope(event_type_header: str | None, payload: Mapping[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
    outer = as_text(payload.get("type"))
    if not outer:
        if payload.get("command"):
            outer = "slash_command"
        else:
            raise MalformedPayloadError("slack", "missing 'type'", field="type")

    team = as_mapping(payload.get("team"))
    fields: dict[str, Any] = {
        "raw_event_type": outer,
        "organization": as_text(team.get("domain")) or as_text(payload.get("team_domain")),
        "organization_id": as_id(payload.get("team_id")) or as_id(team.get("id")),
        "webhook_id": as_id(payload.get("api_app_id")),
    }

    retry_num = headers.get("x-slack-retry-num")
    if retry_num:
        fields["metadata"] = {
            "slack_retry_num": retry_num,
            "slack_retry_reason": headers.get("x-slack-retry-reason"),
        }

    if outer == "event_callback":
        event = as_mapping(payload.get("event"))
        inner = as_text(event.get("type"))
        if not inner:
            raise MalformedPayloadError("slack", "event_callback without event.type", field="event.type")
        channel_id = _id_or_nested(event.get("channel"))
        fields.update(
            event_type=inner,
            action=as_text(event.get("subtype")),
            delivery_id=as_id(payload.get("event_id")),
            actor_id=_id_or_nested(event.get("user")) or as_id(event.get("bot_id")),
            actor_type="bot" if event.get("bot_id") else ("user" if event.get("user") else None),
            channel_id=channel_id,
            channel_type=channel_type_for(channel_id, as_text(event.get("channel_type"))),
            timestamp=parse_timestamp(payload.get("event_time")) or parse_timestamp(event.get("event_ts")),
        )
    elif outer in INTERACTION_TYPES:
        user = as_mapping(payload.get("user"))
        channel = as_mapping(payload.get("channel"))
        channel_id = as_id(channel.get("id"))
        fields.update(
            event_type=outer,
            action=as_text(payload.get("callback_id")) or as_text(dig(payload, "view", "callback_id")),
            delivery_id=as_id(payload.get("trigger_id")) or as_id(dig(payload, "view", "id")),
            actor=as_text(user.get("username")) or as_text(user.get("name")),
            actor_id=as_id(user.get("id")),
            actor_type="user" if user else None,
            channel=as_text(channel.get("name")),
            channel_id=channel_id,
            channel_type=channel_type_for(channel_id),
            timestamp=parse_timestamp(payload.get("action_ts")),
        )
    elif outer == "slash_command":
        channel_id = as_id(payload.get("channel_id"))
        fields.update(
            event_type="slash_command",
            action=as_text(payload.get("command")),
            delivery_id=as_id(payload.get("trigger_id")),
            actor=as_text(payload.get("user_name")),
            actor_id=as_id(payload.get("user_id")),
            actor_type="user",
            channel=as_text(payload.get("channel_name")),
            channel_id=channel_id,
            channel_type=channel_type_for(channel_id),
        )
    else:
        fields["event_type"] = outer

    return fields


def _event(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    return as_mapping(payload.get("event"))


@register(Source.SLACK, "message", "app_mention")
def extract_message(payload: Mapping[str, Any]) -> dict[str, Any]:
    event = _event(payload)
    # edits carry the new text under event.message
    message = as_mapping(event.get("message")) or event
    text = as_text(message.get("text"))
    thread_ts = message.get("thread_ts")
    return {
        "target_entity": preview(text),
        "target_entity_id": as_id(message.get("client_msg_id")) or as_id(message.get("ts")) or as_id(event.get("ts")),
        "target_entity_type": "mention" if event.get("type") == "app_mention" else "message",
        "additional_context": {
            "text_length": len(text) if text else 0,
            "thread_ts": thread_ts,
            "is_thread_reply": bool(thread_ts and thread_ts != message.get("ts")),
            "mentions": extract_mentions(text),
            "has_files": bool(as_list(message.get("files"))),
            "bot_id": event.get("bot_id"),
        },
    }


@register(Source.SLACK, "reaction_added", "reaction_removed")
def extract_reaction(payload: Mapping[str, Any]) -> dict[str, Any]:
    event = _event(payload)
    item = as_mapping(event.get("item"))
    channel_id = as_id(item.get("channel"))
    return {
        "target_entity": as_text(event.get("reaction")),
        "target_entity_id": as_id(item.get("ts")),
        "target_entity_type": "reaction",
        "channel_id": channel_id,
        "channel_type": channel_type_for(channel_id),
        "additional_context": {
            "item_type": item.get("type"),
            "item_user": event.get("item_user"),
        },
    }


@register(Source.SLACK, "member_joined_channel", "member_left_channel")
def extract_membership(payload: Mapping[str, Any]) -> dict[str, Any]:
    event = _event(payload)
    return {
        "target_entity": as_text(event.get("user")),
        "target_entity_id": as_id(event.get("user")),
        "target_entity_type": "channel_membership",
        "additional_context": {"inviter": event.get("inviter")},
    }


@register(Source.SLACK, "channel_created", "channel_rename")
def extract_channel(payload: Mapping[str, Any]) -> dict[str, Any]:
    channel = as_mapping(_event(payload).get("channel"))
    return {
        "target_entity": as_text(channel.get("name")),
        "target_entity_id": as_id(channel.get("id")),
        "target_entity_type": "channel",
        "channel": as_text(channel.get("name")),
        "actor_id": as_id(channel.get("creator")),
        "additional_context": {"created": channel.get("created")},
    }


@register(Source.SLACK, "team_join", "user_change")
def extract_workspace_user(payload: Mapping[str, Any]) -> dict[str, Any]:
    user = as_mapping(_event(payload).get("user"))
    return {
        "target_entity": as_text(user.get("real_name")) or as_text(user.get("name")),
        "target_entity_id": as_id(user.get("id")),
        "target_entity_type": "user",
        "additional_context": {
            "is_bot": bool(user.get("is_bot")),
            "deleted": bool(user.get("deleted")),
            "tz": user.get("tz"),
        },
    }


@register(Source.SLACK, "file_shared")
def extract_file_shared(payload: Mapping[str, Any]) -> dict[str, Any]:
    event = _event(payload)
    return {
        "target_entity": as_id(event.get("file_id")),
        "target_entity_id": as_id(event.get("file_id")),
        "target_entity_type": "file",
        "actor_id": as_id(event.get("user_id")),
    }


@register(Source.SLACK, "block_actions")
def extract_block_actions(payload: Mapping[str, Any]) -> dict[str, Any]:
    actions = [as_mapping(a) for a in as_list(payload.get("actions"))]
    first = actions[0] if actions else {}
    return {
        "action": as_text(first.get("action_id")),
        "target_entity": as_text(first.get("action_id")),
        "target_entity_id": as_id(first.get("block_id")) or as_id(first.get("action_ts")),
        "target_entity_type": "block_action",
        "timestamp": parse_timestamp(first.get("action_ts")),
        "additional_context": {
            "action_ids": [a.get("action_id") for a in actions],
            "values": [a.get("value") for a in actions if "value" in a],
            "container_type": dig(payload, "container", "type"),
            "view_id": dig(payload, "view", "id"),
        },
    }


@register(Source.SLACK, "view_submission", "view_closed")
def extract_view(payload: Mapping[str, Any]) -> dict[str, Any]:
    view = as_mapping(payload.get("view"))
    values = as_mapping(dig(view, "state", "values"))
    return {
        "target_entity": as_text(view.get("callback_id")) or as_text(dig(view, "title", "text")),
        "target_entity_id": as_id(view.get("id")),
        "target_entity_type": "view",
        "additional_context": {
            "view_type": view.get("type"),
            "block_ids": sorted(values),
            "private_metadata": view.get("private_metadata"),
        },
    }


@register(Source.SLACK, "shortcut", "message_action")
def extract_shortcut(payload: Mapping[str, Any]) -> dict[str, Any]:
    message = as_mapping(payload.get("message"))
    return {
        "target_entity": as_text(payload.get("callback_id")),
        "target_entity_id": as_id(message.get("ts")) or as_id(payload.get("action_ts")),
        "target_entity_type": "message" if message else "shortcut",
        "additional_context": {"message_text": preview(message.get("text"))},
    }


@register(Source.SLACK, "slash_command")
def extract_slash_command(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "target_entity": as_text(payload.get("command")),
        "target_entity_id": as_id(payload.get("trigger_id")),
        "target_entity_type": "slash_command",
        "additional_context": {
            "text": preview(payload.get("text")),
            "response_url_present": bool(payload.get("response_url")),
        },
    }


register_provider(Source.SLACK, envelope=envelope, activity=activity)
