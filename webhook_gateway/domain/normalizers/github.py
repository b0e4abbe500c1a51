"""
GitHub payload extraction.

The event name comes from the ``X-GitHub-Event`` header, never the body.
Repository, organization and sender are common to nearly every event and
are read by the envelope; extractors add the target entity per event type.
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

ACTIVITY_NAMES: dict[str, str | dict[str, str]] = {
    "push": "code_pushed",
    "create": "ref_created",
    "delete": "ref_deleted",
    "fork": "repo_forked",
    "ping": "webhook_ping",
    "status": "commit_status_updated",
    "pull_request": {
        "opened": "pr_opened",
        "closed": "pr_closed",
        "reopened": "pr_reopened",
        "synchronize": "pr_updated",
        "edited": "pr_edited",
        "review_requested": "pr_review_requested",
        "labeled": "pr_labeled",
        "assigned": "pr_assigned",
        "converted_to_draft": "pr_converted_to_draft",
        "ready_for_review": "pr_ready_for_review",
    },
    "pull_request_review": {
        "submitted": "pr_review_submitted",
        "edited": "pr_review_edited",
        "dismissed": "pr_review_dismissed",
    },
    "issues": {
        "opened": "issue_opened",
        "closed": "issue_closed",
        "reopened": "issue_reopened",
        "edited": "issue_edited",
        "deleted": "issue_deleted",
        "labeled": "issue_labeled",
        "assigned": "issue_assigned",
        "transferred": "issue_transferred",
    },
    "issue_comment": {
        "created": "issue_comment_created",
        "edited": "issue_comment_edited",
        "deleted": "issue_comment_deleted",
    },
    "release": {
        "published": "release_published",
        "created": "release_created",
        "released": "release_released",
        "prereleased": "release_prereleased",
        "deleted": "release_deleted",
    },
    "workflow_run": {
        "requested": "workflow_requested",
        "in_progress": "workflow_in_progress",
        "completed": "workflow_completed",
    },
    "deployment": {"created": "deployment_created"},
    "deployment_status": {"created": "deployment_status_updated"},
    "star": {"created": "repo_starred", "deleted": "repo_unstarred"},
}


def activity(event_type: str, action: str | None) -> str:
    entry = ACTIVITY_NAMES.get(event_type)
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict) and action in entry:
        return entry[action]
    return f"{event_type}_{action}" if action else event_type


def envelope(event_type_header: str | None, payload: Mapping[str, Any], headers: Mapping[str, str]) -> dict[str, Any]:
    event_type = event_type_header or headers.get("x-github-event")
    if not event_type:
        raise MalformedPayloadError("github", "missing X-GitHub-Event header", field="x-github-event")

    repo = as_mapping(payload.get("repository"))
    org = as_mapping(payload.get("organization"))
    sender = as_mapping(payload.get("sender"))

    return {
        "event_type": event_type,
        "raw_event_type": event_type,
        "action": as_text(payload.get("action")),
        "delivery_id": headers.get("x-github-delivery"),
        "webhook_id": headers.get("x-github-hook-id"),
        "repository": as_text(repo.get("full_name")),
        "repository_id": as_id(repo.get("id")),
        "organization": as_text(org.get("login")) or as_text(dig(repo, "owner", "login")),
        "organization_id": as_id(org.get("id")) or as_id(dig(repo, "owner", "id")),
        "actor": as_text(sender.get("login")),
        "actor_id": as_id(sender.get("id")),
        "actor_type": as_text(sender.get("type")),
        "metadata": {"hook_id": headers.get("x-github-hook-id")} if headers.get("x-github-hook-id") else {},
    }


def _ref_name(ref: str) -> str | None:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref or None


@register(Source.GITHUB, "push")
def extract_push(payload: Mapping[str, Any]) -> dict[str, Any]:
    ref = as_text(payload.get("ref")) or ""
    head = as_mapping(payload.get("head_commit"))
    commits = as_list(payload.get("commits"))
    pusher = as_mapping(payload.get("pusher"))
    return {
        "target_entity": _ref_name(ref),
        "target_entity_id": as_id(payload.get("after")),
        "target_entity_type": "tag" if ref.startswith("refs/tags/") else "branch",
        "actor": as_text(pusher.get("name")) if not payload.get("sender") else None,
        "actor_email": as_text(pusher.get("email")),
        "timestamp": parse_timestamp(head.get("timestamp")),
        "additional_context": {
            "ref": ref,
            "before": payload.get("before"),
            "after": payload.get("after"),
            "commit_count": len(commits),
            "created": bool(payload.get("created")),
            "deleted": bool(payload.get("deleted")),
            "forced": bool(payload.get("forced")),
            "compare_url": payload.get("compare"),
            "head_commit_message": preview(head.get("message")),
        },
    }


@register(Source.GITHUB, "pull_request")
def extract_pull_request(payload: Mapping[str, Any]) -> dict[str, Any]:
    pr = as_mapping(payload.get("pull_request"))
    merged = bool(pr.get("merged"))
    return {
        "target_entity": as_text(pr.get("title")),
        "target_entity_id": as_id(pr.get("number") or payload.get("number")),
        "target_entity_type": "pull_request",
        "timestamp": parse_timestamp(pr.get("updated_at")),
        "activity": "pr_merged" if payload.get("action") == "closed" and merged else None,
        "additional_context": {
            "number": pr.get("number"),
            "state": pr.get("state"),
            "draft": bool(pr.get("draft")),
            "merged": merged,
            "base_ref": dig(pr, "base", "ref"),
            "head_ref": dig(pr, "head", "ref"),
            "head_sha": dig(pr, "head", "sha"),
            "additions": pr.get("additions"),
            "deletions": pr.get("deletions"),
            "changed_files": pr.get("changed_files"),
            "url": pr.get("html_url"),
        },
    }


@register(Source.GITHUB, "pull_request_review")
def extract_pull_request_review(payload: Mapping[str, Any]) -> dict[str, Any]:
    pr = as_mapping(payload.get("pull_request"))
    review = as_mapping(payload.get("review"))
    return {
        "target_entity": as_text(pr.get("title")),
        "target_entity_id": as_id(pr.get("number")),
        "target_entity_type": "pull_request",
        "timestamp": parse_timestamp(review.get("submitted_at")),
        "additional_context": {
            "review_id": review.get("id"),
            "review_state": review.get("state"),
            "pull_request_number": pr.get("number"),
            "body_preview": preview(review.get("body")),
        },
    }


@register(Source.GITHUB, "issues")
def extract_issue(payload: Mapping[str, Any]) -> dict[str, Any]:
    issue = as_mapping(payload.get("issue"))
    return {
        "target_entity": as_text(issue.get("title")),
        "target_entity_id": as_id(issue.get("number")),
        "target_entity_type": "issue",
        "timestamp": parse_timestamp(issue.get("updated_at")),
        "additional_context": {
            "number": issue.get("number"),
            "state": issue.get("state"),
            "labels": [dig(label, "name") for label in as_list(issue.get("labels")) if dig(label, "name")],
            "assignees": [dig(a, "login") for a in as_list(issue.get("assignees")) if dig(a, "login")],
            "url": issue.get("html_url"),
        },
    }


@register(Source.GITHUB, "issue_comment")
def extract_issue_comment(payload: Mapping[str, Any]) -> dict[str, Any]:
    issue = as_mapping(payload.get("issue"))
    comment = as_mapping(payload.get("comment"))
    return {
        "target_entity": as_text(issue.get("title")),
        "target_entity_id": as_id(issue.get("number")),
        "target_entity_type": "pull_request" if "pull_request" in issue else "issue",
        "timestamp": parse_timestamp(comment.get("updated_at") or comment.get("created_at")),
        "additional_context": {
            "comment_id": comment.get("id"),
            "body_preview": preview(comment.get("body")),
            "url": comment.get("html_url"),
        },
    }


@register(Source.GITHUB, "release")
def extract_release(payload: Mapping[str, Any]) -> dict[str, Any]:
    release = as_mapping(payload.get("release"))
    return {
        "target_entity": as_text(release.get("name")) or as_text(release.get("tag_name")),
        "target_entity_id": as_id(release.get("id")),
        "target_entity_type": "release",
        "timestamp": parse_timestamp(release.get("published_at") or release.get("created_at")),
        "additional_context": {
            "tag_name": release.get("tag_name"),
            "draft": bool(release.get("draft")),
            "prerelease": bool(release.get("prerelease")),
            "url": release.get("html_url"),
        },
    }


@register(Source.GITHUB, "workflow_run")
def extract_workflow_run(payload: Mapping[str, Any]) -> dict[str, Any]:
    run = as_mapping(payload.get("workflow_run"))
    return {
        "target_entity": as_text(run.get("name")),
        "target_entity_id": as_id(run.get("id")),
        "target_entity_type": "workflow_run",
        "timestamp": parse_timestamp(run.get("updated_at")),
        "additional_context": {
            "status": run.get("status"),
            "conclusion": run.get("conclusion"),
            "run_number": run.get("run_number"),
            "head_branch": run.get("head_branch"),
            "head_sha": run.get("head_sha"),
            "trigger": run.get("event"),
        },
    }


@register(Source.GITHUB, "create", "delete")
def extract_ref_change(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "target_entity": as_text(payload.get("ref")),
        "target_entity_id": as_text(payload.get("ref")),
        "target_entity_type": as_text(payload.get("ref_type")),
        "additional_context": {
            "ref_type": payload.get("ref_type"),
            "master_branch": payload.get("master_branch"),
        },
    }


@register(Source.GITHUB, "deployment")
def extract_deployment(payload: Mapping[str, Any]) -> dict[str, Any]:
    deployment = as_mapping(payload.get("deployment"))
    return {
        "target_entity": as_text(deployment.get("environment")),
        "target_entity_id": as_id(deployment.get("id")),
        "target_entity_type": "deployment",
        "timestamp": parse_timestamp(deployment.get("created_at")),
        "additional_context": {
            "ref": deployment.get("ref"),
            "sha": deployment.get("sha"),
            "task": deployment.get("task"),
        },
    }


@register(Source.GITHUB, "deployment_status")
def extract_deployment_status(payload: Mapping[str, Any]) -> dict[str, Any]:
    status = as_mapping(payload.get("deployment_status"))
    deployment = as_mapping(payload.get("deployment"))
    return {
        "target_entity": as_text(deployment.get("environment")),
        "target_entity_id": as_id(status.get("id")),
        "target_entity_type": "deployment_status",
        "timestamp": parse_timestamp(status.get("updated_at") or status.get("created_at")),
        "additional_context": {
            "state": status.get("state"),
            "deployment_id": deployment.get("id"),
            "target_url": status.get("target_url"),
        },
    }


@register(Source.GITHUB, "star")
def extract_star(payload: Mapping[str, Any]) -> dict[str, Any]:
    repo = as_mapping(payload.get("repository"))
    return {
        "target_entity": as_text(repo.get("full_name")),
        "target_entity_id": as_id(repo.get("id")),
        "target_entity_type": "repository",
        "timestamp": parse_timestamp(payload.get("starred_at")),
        "additional_context": {"stargazers_count": repo.get("stargazers_count")},
    }


@register(Source.GITHUB, "fork")
def extract_fork(payload: Mapping[str, Any]) -> dict[str, Any]:
    forkee = as_mapping(payload.get("forkee"))
    return {
        "target_entity": as_text(forkee.get("full_name")),
        "target_entity_id": as_id(forkee.get("id")),
        "target_entity_type": "repository",
        "timestamp": parse_timestamp(forkee.get("created_at")),
        "additional_context": {"forks_count": dig(payload, "repository", "forks_count")},
    }


@register(Source.GITHUB, "ping")
def extract_ping(payload: Mapping[str, Any]) -> dict[str, Any]:
    hook = as_mapping(payload.get("hook"))
    return {
        "target_entity": as_text(hook.get("name")) or "webhook",
        "target_entity_id": as_id(payload.get("hook_id") or hook.get("id")),
        "target_entity_type": "webhook",
        "additional_context": {
            "zen": payload.get("zen"),
            "events": as_list(hook.get("events")),
        },
    }


register_provider(Source.GITHUB, envelope=envelope, activity=activity)
