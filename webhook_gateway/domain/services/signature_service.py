"""
Webhook signature verification for GitHub, Linear and Slack.

Every check runs over the raw request bytes exactly as they arrived; a
re-serialized body would not reproduce the provider's HMAC. Comparisons use
``hmac.compare_digest``. A provider with no configured secret rejects every
delivery instead of skipping verification.

Header formats:
    GitHub  ``X-Hub-Signature-256: sha256=<hex>`` over the body.
    Linear  ``Linear-Signature: <base64>`` over the body.
    Slack   ``X-Slack-Signature: v0=<hex>`` over ``v0:{timestamp}:{body}``,
            with ``X-Slack-Request-Timestamp`` inside the replay window.
"""
import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from webhook_gateway.core.logging import get_logger
from webhook_gateway.domain.events import Source

logger = get_logger(__name__)

GITHUB_SIGNATURE_HEADER = "x-hub-signature-256"
LINEAR_SIGNATURE_HEADERS = ("linear-signature", "x-linear-signature")
SLACK_SIGNATURE_HEADER = "x-slack-signature"
SLACK_TIMESTAMP_HEADER = "x-slack-request-timestamp"

SLACK_SIGNATURE_VERSION = "v0"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str | None = None
    challenge: str | None = None

    @classmethod
    def rejected(cls, reason: str) -> "VerificationResult":
        return cls(ok=False, reason=reason)


def _hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def _slack_basestring(timestamp: str, raw_body: bytes) -> bytes:
    return f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + raw_body


def generate_signature(
    source: Source,
    secret: str,
    raw_body: bytes,
    timestamp: int | str | None = None,
) -> str:
    """Header value a provider would send for ``raw_body``. Slack needs ``timestamp``."""
    if source is Source.GITHUB:
        return "sha256=" + _hmac_sha256(secret, raw_body).hex()
    if source is Source.LINEAR:
        return base64.b64encode(_hmac_sha256(secret, raw_body)).decode("ascii")
    if source is Source.SLACK:
        if timestamp is None:
            raise ValueError("Slack signatures need a request timestamp")
        digest = _hmac_sha256(secret, _slack_basestring(str(timestamp), raw_body))
        return f"{SLACK_SIGNATURE_VERSION}=" + digest.hex()
    raise ValueError(f"Unknown source: {source}")


def _slack_challenge(raw_body: bytes) -> str | None:
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(body, dict) and body.get("type") == "url_verification":
        challenge = body.get("challenge")
        return challenge if isinstance(challenge, str) else None
    return None


class SignatureVerifier:
    """Verifies deliveries against per-provider secrets.

    ``clock`` returns epoch seconds and only matters for Slack's replay window.
    """

    def __init__(
        self,
        secrets: Mapping[Source, str],
        *,
        slack_tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secrets = {source: secret for source, secret in secrets.items() if secret}
        self._slack_tolerance = slack_tolerance_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "SignatureVerifier":
        return cls(
            {
                Source.GITHUB: settings.GITHUB_WEBHOOK_SECRET,
                Source.LINEAR: settings.LINEAR_WEBHOOK_SECRET,
                Source.SLACK: settings.SLACK_SIGNING_SECRET,
            },
            slack_tolerance_seconds=settings.SLACK_TIMESTAMP_TOLERANCE_SECONDS,
        )

    def configured_sources(self) -> list[str]:
        return sorted(source.value for source in self._secrets)

    def verify(self, source: Source, raw_body: bytes, headers: Mapping[str, str]) -> VerificationResult:
        """Check one delivery. ``headers`` must have lower-cased keys."""
        secret = self._secrets.get(source)
        if not secret:
            logger.warning(
                "Webhook secret not configured; rejecting delivery",
                extra_data={"source": source.value},
            )
            return VerificationResult.rejected("secret not configured")

        if source is Source.GITHUB:
            result = self._verify_github(secret, raw_body, headers)
        elif source is Source.LINEAR:
            result = self._verify_linear(secret, raw_body, headers)
        else:
            result = self._verify_slack(secret, raw_body, headers)

        if not result.ok:
            logger.warning(
                "Webhook signature rejected",
                extra_data={"source": source.value, "reason": result.reason},
            )
        return result

    def _verify_github(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> VerificationResult:
        header = headers.get(GITHUB_SIGNATURE_HEADER)
        if not header:
            return VerificationResult.rejected("missing signature header")
        if not header.startswith("sha256="):
            return VerificationResult.rejected("unsupported signature scheme")

        expected = "sha256=" + _hmac_sha256(secret, raw_body).hex()
        if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
            return VerificationResult.rejected("signature mismatch")
        return VerificationResult(ok=True)

    def _verify_linear(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> VerificationResult:
        header = next((headers[name] for name in LINEAR_SIGNATURE_HEADERS if headers.get(name)), None)
        if not header:
            return VerificationResult.rejected("missing signature header")

        try:
            provided = base64.b64decode(header, validate=True)
        except (binascii.Error, ValueError):
            return VerificationResult.rejected("signature is not valid base64")

        if not hmac.compare_digest(provided, _hmac_sha256(secret, raw_body)):
            return VerificationResult.rejected("signature mismatch")
        return VerificationResult(ok=True)

    def _verify_slack(self, secret: str, raw_body: bytes, headers: Mapping[str, str]) -> VerificationResult:
        header = headers.get(SLACK_SIGNATURE_HEADER)
        timestamp = headers.get(SLACK_TIMESTAMP_HEADER)
        if not header or not timestamp:
            return VerificationResult.rejected("missing signature header")

        try:
            ts = int(timestamp)
        except ValueError:
            return VerificationResult.rejected("invalid request timestamp")

        # replay check before any HMAC work
        if abs(self._clock() - ts) > self._slack_tolerance:
            return VerificationResult.rejected("request timestamp outside tolerance")

        expected = f"{SLACK_SIGNATURE_VERSION}=" + _hmac_sha256(secret, _slack_basestring(timestamp, raw_body)).hex()
        if not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
            return VerificationResult.rejected("signature mismatch")

        return VerificationResult(ok=True, challenge=_slack_challenge(raw_body))
