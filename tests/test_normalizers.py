"""
Payload normalization tests - webhook_gateway/domain/normalizers

Covers:
- GitHub / Linear / Slack field extraction
- Slack form bodies (interactivity, slash commands)
- Malformed envelopes
- event_hash stability across provider retries
"""
import json
from datetime import datetime
from urllib.parse import urlencode

import pytest

from webhook_gateway.core.exceptions import MalformedPayloadError
from webhook_gateway.domain.events import Source, compute_event_hash
from webhook_gateway.domain.normalizers import decode_payload, normalize, registered_event_types
from webhook_gateway.domain.normalizers.slack import channel_type_for, extract_mentions
from webhook_gateway.domain.normalizers.helpers import parse_timestamp, preview

from tests.conftest import github_push_payload, linear_issue_payload, slack_message_payload


class TestGitHub:

    @pytest.mark.unit
    def test_push_fields(self) -> None:
        payload = github_push_payload()
        event = normalize(
            Source.GITHUB, "push", payload,
            headers={"X-GitHub-Delivery": "d-1", "X-GitHub-Hook-ID": "77"},
        )
        assert event.source is Source.GITHUB
        assert event.event_type == "push"
        assert event.repository == "acme/widgets"
        assert event.repository_id == "1296269"
        assert event.organization == "acme"
        assert event.actor == "dana"
        assert event.actor_type == "User"
        assert event.delivery_id == "d-1"
        assert event.webhook_id == "77"
        assert event.target_entity == "main"
        assert event.target_entity_type == "branch"
        assert event.target_entity_id == payload["after"]
        assert event.timestamp == datetime(2026, 3, 1, 10, 15)
        assert event.metadata["activity"] == "code_pushed"
        assert event.additional_context["commit_count"] == 1
        assert len(event.event_hash) == 64

    @pytest.mark.unit
    def test_tag_push(self) -> None:
        payload = {**github_push_payload(), "ref": "refs/tags/v1.2.0"}
        event = normalize(Source.GITHUB, "push", payload)
        assert event.target_entity == "v1.2.0"
        assert event.target_entity_type == "tag"

    @pytest.mark.unit
    def test_event_type_read_from_headers_when_not_passed(self) -> None:
        event = normalize(Source.GITHUB, None, github_push_payload(), headers={"x-github-event": "push"})
        assert event.event_type == "push"

    @pytest.mark.unit
    def test_missing_event_header_is_malformed(self) -> None:
        with pytest.raises(MalformedPayloadError):
            normalize(Source.GITHUB, None, github_push_payload())

    @pytest.mark.unit
    def test_merged_pull_request_activity(self) -> None:
        payload = {
            "action": "closed",
            "number": 5,
            "pull_request": {"number": 5, "title": "Add retries", "merged": True, "state": "closed"},
            "repository": {"full_name": "acme/widgets", "id": 1},
            "sender": {"login": "dana", "id": 7},
        }
        event = normalize(Source.GITHUB, "pull_request", payload)
        assert event.action == "closed"
        assert event.target_entity_id == "5"
        assert event.metadata["activity"] == "pr_merged"

    @pytest.mark.unit
    def test_unknown_event_type_kept_verbatim(self) -> None:
        payload = {"action": "rotated", "repository": {"full_name": "acme/widgets"}, "sender": {"login": "x"}}
        event = normalize(Source.GITHUB, "secret_scanning_alert", payload)
        assert event.event_type == "secret_scanning_alert"
        assert event.target_entity is None
        assert event.metadata["activity"] == "secret_scanning_alert_rotated"

    @pytest.mark.unit
    def test_registered_types(self) -> None:
        types = registered_event_types(Source.GITHUB)
        assert {"push", "pull_request", "issues", "release", "workflow_run"} <= set(types)


class TestLinear:

    @pytest.mark.unit
    def test_issue_fields(self) -> None:
        event = normalize(
            Source.LINEAR, "Issue", linear_issue_payload(),
            headers={"Linear-Delivery": "lin-d-1"},
        )
        assert event.event_type == "Issue"
        assert event.action == "create"
        assert event.repository == "Engineering"
        assert event.repository_id == "team-1"
        assert event.organization_id == "org-1"
        assert event.actor == "Robin"
        assert event.actor_email == "robin@example.com"
        assert event.target_entity == "Webhook retries pile up"
        assert event.target_entity_id == "issue-12"
        assert event.delivery_id == "lin-d-1"
        assert event.metadata["activity"] == "issue_created"

    @pytest.mark.unit
    def test_issue_state_change_activity(self) -> None:
        payload = {**linear_issue_payload("update"), "updatedFrom": {"stateId": "s-1", "updatedAt": "x"}}
        event = normalize(Source.LINEAR, "Issue", payload)
        assert event.metadata["activity"] == "issue_state_changed"
        assert event.additional_context["changed_fields"] == ["stateId"]

    @pytest.mark.unit
    def test_missing_type_is_malformed(self) -> None:
        payload = linear_issue_payload()
        del payload["type"]
        with pytest.raises(MalformedPayloadError) as exc_info:
            normalize(Source.LINEAR, None, payload)
        assert exc_info.value.details["field"] == "type"

    @pytest.mark.unit
    def test_webhook_timestamp_does_not_change_hash(self) -> None:
        first = linear_issue_payload()
        retry = {**first, "webhookTimestamp": first["webhookTimestamp"] + 60_000}
        headers = {"linear-delivery": "lin-d-1"}
        assert (
            normalize(Source.LINEAR, "Issue", first, headers=headers).event_hash
            == normalize(Source.LINEAR, "Issue", retry, headers=headers).event_hash
        )


class TestSlack:

    @pytest.mark.unit
    def test_message_fields(self) -> None:
        event = normalize(Source.SLACK, None, slack_message_payload())
        assert event.event_type == "message"
        assert event.raw_event_type == "event_callback"
        assert event.delivery_id == "Ev0001"
        assert event.organization_id == "T123"
        assert event.actor_id == "U123"
        assert event.channel_id == "C123"
        assert event.channel_type == "public_channel"
        assert event.target_entity_type == "message"
        assert event.additional_context["mentions"]["users"] == ["U456"]
        assert event.additional_context["mentions"]["links"] == ["https://ci.example.com/1"]
        assert event.metadata["activity"] == "message_sent"

    @pytest.mark.unit
    def test_event_callback_without_inner_type_is_malformed(self) -> None:
        payload = {"type": "event_callback", "event": {}}
        with pytest.raises(MalformedPayloadError):
            normalize(Source.SLACK, None, payload)

    @pytest.mark.unit
    def test_retry_headers_go_to_metadata(self) -> None:
        event = normalize(
            Source.SLACK, None, slack_message_payload(),
            headers={"X-Slack-Retry-Num": "1", "X-Slack-Retry-Reason": "http_timeout"},
        )
        assert event.metadata["slack_retry_num"] == "1"
        assert event.metadata["slack_retry_reason"] == "http_timeout"

    @pytest.mark.unit
    def test_slack_retry_hashes_like_original(self) -> None:
        original = normalize(Source.SLACK, None, slack_message_payload())
        retry = normalize(Source.SLACK, None, slack_message_payload(), headers={"x-slack-retry-num": "2"})
        assert original.event_hash == retry.event_hash

    @pytest.mark.unit
    def test_block_actions_form_body(self) -> None:
        interaction = {
            "type": "block_actions",
            "trigger_id": "trig-1",
            "team": {"id": "T123", "domain": "acme"},
            "user": {"id": "U123", "username": "dana"},
            "channel": {"id": "C123", "name": "deploys"},
            "actions": [{"action_id": "approve", "block_id": "b1", "value": "yes", "action_ts": "1772355600.1"}],
        }
        body = urlencode({"payload": json.dumps(interaction)}).encode()
        payload = decode_payload(Source.SLACK, body, "application/x-www-form-urlencoded")
        event = normalize(Source.SLACK, None, payload)
        assert event.event_type == "block_actions"
        assert event.action == "approve"
        assert event.actor == "dana"
        assert event.channel == "deploys"
        assert event.organization == "acme"
        assert event.additional_context["values"] == ["yes"]

    @pytest.mark.unit
    def test_slash_command_form_body(self) -> None:
        body = urlencode({
            "command": "/deploy",
            "text": "widgets prod",
            "user_id": "U123",
            "user_name": "dana",
            "channel_id": "D999",
            "team_id": "T123",
            "trigger_id": "trig-2",
        }).encode()
        payload = decode_payload(Source.SLACK, body, "application/x-www-form-urlencoded; charset=utf-8")
        event = normalize(Source.SLACK, None, payload)
        assert event.event_type == "slash_command"
        assert event.action == "/deploy"
        assert event.channel_type == "im"
        assert event.metadata["activity"] == "slash_command_used"

    @pytest.mark.unit
    def test_helpers(self) -> None:
        assert channel_type_for("G123") == "private_channel"
        assert channel_type_for("C1", "group") == "private_channel"
        assert channel_type_for(None) is None
        assert extract_mentions("hi <#C42|general>")["channels"] == ["C42"]


class TestDecodePayload:

    @pytest.mark.unit
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'"text"', b"\xff\xfe"])
    def test_non_object_bodies_rejected(self, body: bytes) -> None:
        with pytest.raises(MalformedPayloadError):
            decode_payload(Source.GITHUB, body, "application/json")

    @pytest.mark.unit
    def test_invalid_interactive_json_rejected(self) -> None:
        body = urlencode({"payload": "{broken"}).encode()
        with pytest.raises(MalformedPayloadError):
            decode_payload(Source.SLACK, body, "application/x-www-form-urlencoded")

    @pytest.mark.unit
    def test_non_mapping_payload_rejected_by_normalize(self) -> None:
        with pytest.raises(MalformedPayloadError):
            normalize(Source.GITHUB, "push", ["not", "a", "dict"])


class TestEventHash:

    @pytest.mark.unit
    def test_same_delivery_same_hash_regardless_of_ingestion_time(self) -> None:
        headers = {"x-github-delivery": "d-1"}
        first = normalize(Source.GITHUB, "push", github_push_payload(), headers=headers,
                          received_at=datetime(2026, 3, 1, 10, 0))
        second = normalize(Source.GITHUB, "push", github_push_payload(), headers=headers,
                           received_at=datetime(2026, 3, 1, 11, 0))
        assert first.event_hash == second.event_hash
        assert first.created_at != second.created_at

    @pytest.mark.unit
    def test_different_delivery_different_hash(self) -> None:
        first = normalize(Source.GITHUB, "push", github_push_payload(), headers={"x-github-delivery": "d-1"})
        second = normalize(Source.GITHUB, "push", github_push_payload(), headers={"x-github-delivery": "d-2"})
        assert first.event_hash != second.event_hash

    @pytest.mark.unit
    def test_payload_key_order_irrelevant(self) -> None:
        fields = dict(source=Source.GITHUB, event_type="push", action=None, delivery_id="d",
                      repository="r", actor="a", target_entity_id="t")
        assert (
            compute_event_hash(payload={"a": 1, "b": 2}, **fields)
            == compute_event_hash(payload={"b": 2, "a": 1}, **fields)
        )

    @pytest.mark.unit
    def test_round_trip_through_json(self) -> None:
        event = normalize(Source.LINEAR, "Issue", linear_issue_payload())
        restored = type(event).model_validate(event.to_json_dict())
        assert restored == event
        assert restored.to_row()["event_metadata"] == event.metadata


class TestHelpers:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2026-03-01T10:15:00Z", datetime(2026, 3, 1, 10, 15)),
            ("2026-03-01T12:15:00+02:00", datetime(2026, 3, 1, 10, 15)),
            (1772355600, datetime(2026, 3, 1, 9, 0)),
            (1772355600000, datetime(2026, 3, 1, 9, 0)),
            ("", None),
            (None, None),
            (True, None),
            ("not a date", None),
        ],
    )
    def test_parse_timestamp(self, value, expected) -> None:
        assert parse_timestamp(value) == expected

    @pytest.mark.unit
    def test_preview_truncates(self) -> None:
        assert preview("x" * 300, 10) == "xxxxxxx..."
        assert preview("short") == "short"
        assert preview(None) is None
