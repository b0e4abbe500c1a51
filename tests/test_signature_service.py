"""
Signature verification tests - webhook_gateway/domain/services/signature_service.py

Covers:
- Valid signatures for GitHub, Linear and Slack
- Any single-bit change to body, secret or signature is rejected (hypothesis)
- Slack replay window
- Missing secret / missing header / wrong scheme
- Slack url_verification challenge extraction
"""
import base64
import json

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import binary, integers, sampled_from, text

from webhook_gateway.domain.events import Source
from webhook_gateway.domain.services.signature_service import (
    SignatureVerifier,
    VerificationResult,
    generate_signature,
)

NOW = 1_772_355_600

SECRETS = {
    Source.GITHUB: "gh-secret",
    Source.LINEAR: "lin-secret",
    Source.SLACK: "slack-secret",
}


def _verifier(**kwargs) -> SignatureVerifier:
    return SignatureVerifier(SECRETS, clock=lambda: NOW, **kwargs)


def _headers(source: Source, secret: str, body: bytes, timestamp: int = NOW) -> dict[str, str]:
    if source is Source.GITHUB:
        return {"x-hub-signature-256": generate_signature(source, secret, body)}
    if source is Source.LINEAR:
        return {"linear-signature": generate_signature(source, secret, body)}
    return {
        "x-slack-request-timestamp": str(timestamp),
        "x-slack-signature": generate_signature(source, secret, body, timestamp=timestamp),
    }


def _flip_bit(data: bytes, bit: int) -> bytes:
    index = bit // 8 % len(data)
    mutated = bytearray(data)
    mutated[index] ^= 1 << (bit % 8)
    return bytes(mutated)


class TestValidSignatures:
    """Signatures produced with the shared secret verify"""

    @pytest.mark.unit
    @pytest.mark.parametrize("source", list(Source))
    def test_valid_signature_accepted(self, source: Source) -> None:
        body = b'{"action":"opened","number":1}'
        result = _verifier().verify(source, body, _headers(source, SECRETS[source], body))
        assert result.ok
        assert result.reason is None

    @pytest.mark.unit
    def test_github_signature_format(self) -> None:
        signature = generate_signature(Source.GITHUB, "s", b"{}")
        assert signature.startswith("sha256=")
        assert len(signature) == len("sha256=") + 64

    @pytest.mark.unit
    def test_linear_signature_is_base64(self) -> None:
        signature = generate_signature(Source.LINEAR, "s", b"{}")
        assert len(base64.b64decode(signature, validate=True)) == 32

    @pytest.mark.unit
    def test_linear_accepts_legacy_header_name(self) -> None:
        body = b'{"type":"Issue"}'
        headers = {"x-linear-signature": generate_signature(Source.LINEAR, SECRETS[Source.LINEAR], body)}
        assert _verifier().verify(Source.LINEAR, body, headers).ok

    @pytest.mark.unit
    def test_slack_requires_timestamp_to_sign(self) -> None:
        with pytest.raises(ValueError):
            generate_signature(Source.SLACK, "s", b"{}")


class TestSingleBitMutations:
    """Any single-bit mutation of body, secret or signature must be rejected"""

    @pytest.mark.unit
    @given(
        source=sampled_from(list(Source)),
        body=binary(min_size=1, max_size=256),
        bit=integers(min_value=0, max_value=10_000),
    )
    @h_settings(max_examples=60, suppress_health_check=[HealthCheck.too_slow])
    def test_body_mutation_rejected(self, source: Source, body: bytes, bit: int) -> None:
        headers = _headers(source, SECRETS[source], body)
        result = _verifier().verify(source, _flip_bit(body, bit), headers)
        assert not result.ok

    @pytest.mark.unit
    @given(
        source=sampled_from(list(Source)),
        body=binary(min_size=1, max_size=256),
        bit=integers(min_value=0, max_value=10_000),
    )
    @h_settings(max_examples=60)
    def test_secret_mutation_rejected(self, source: Source, body: bytes, bit: int) -> None:
        wrong_secret = _flip_bit(SECRETS[source].encode("utf-8"), bit).decode("utf-8", errors="replace")
        if wrong_secret == SECRETS[source]:
            return
        headers = _headers(source, wrong_secret, body)
        assert not _verifier().verify(source, body, headers).ok

    @pytest.mark.unit
    @given(
        body=binary(min_size=1, max_size=256),
        bit=integers(min_value=0, max_value=255),
    )
    @h_settings(max_examples=60)
    def test_github_signature_bit_mutation_rejected(self, body: bytes, bit: int) -> None:
        signature = generate_signature(Source.GITHUB, SECRETS[Source.GITHUB], body)
        digest = bytes.fromhex(signature.removeprefix("sha256="))
        mutated = "sha256=" + _flip_bit(digest, bit).hex()
        assert not _verifier().verify(Source.GITHUB, body, {"x-hub-signature-256": mutated}).ok

    @pytest.mark.unit
    @given(
        body=binary(min_size=1, max_size=256),
        bit=integers(min_value=0, max_value=255),
    )
    @h_settings(max_examples=60)
    def test_linear_signature_bit_mutation_rejected(self, body: bytes, bit: int) -> None:
        digest = base64.b64decode(generate_signature(Source.LINEAR, SECRETS[Source.LINEAR], body))
        mutated = base64.b64encode(_flip_bit(digest, bit)).decode("ascii")
        assert not _verifier().verify(Source.LINEAR, body, {"linear-signature": mutated}).ok

    @pytest.mark.unit
    @given(
        body=binary(min_size=1, max_size=256),
        bit=integers(min_value=0, max_value=255),
    )
    @h_settings(max_examples=60)
    def test_slack_signature_bit_mutation_rejected(self, body: bytes, bit: int) -> None:
        headers = _headers(Source.SLACK, SECRETS[Source.SLACK], body)
        digest = bytes.fromhex(headers["x-slack-signature"].removeprefix("v0="))
        headers["x-slack-signature"] = "v0=" + _flip_bit(digest, bit).hex()
        assert not _verifier().verify(Source.SLACK, body, headers).ok


class TestRejections:

    @pytest.mark.unit
    @pytest.mark.parametrize("source", list(Source))
    def test_missing_header_rejected(self, source: Source) -> None:
        result = _verifier().verify(source, b"{}", {})
        assert result == VerificationResult.rejected("missing signature header")

    @pytest.mark.unit
    @pytest.mark.parametrize("source", list(Source))
    def test_unconfigured_secret_rejects(self, source: Source) -> None:
        verifier = SignatureVerifier({}, clock=lambda: NOW)
        body = b"{}"
        result = verifier.verify(source, body, _headers(source, "anything", body))
        assert not result.ok
        assert result.reason == "secret not configured"

    @pytest.mark.unit
    def test_github_sha1_scheme_rejected(self) -> None:
        result = _verifier().verify(Source.GITHUB, b"{}", {"x-hub-signature-256": "sha1=abcdef"})
        assert result.reason == "unsupported signature scheme"

    @pytest.mark.unit
    def test_linear_non_base64_rejected(self) -> None:
        result = _verifier().verify(Source.LINEAR, b"{}", {"linear-signature": "not base64!!"})
        assert result.reason == "signature is not valid base64"

    @pytest.mark.unit
    def test_slack_non_numeric_timestamp_rejected(self) -> None:
        headers = {"x-slack-request-timestamp": "yesterday", "x-slack-signature": "v0=00"}
        assert _verifier().verify(Source.SLACK, b"{}", headers).reason == "invalid request timestamp"

    @pytest.mark.unit
    def test_configured_sources(self) -> None:
        verifier = SignatureVerifier({Source.GITHUB: "x", Source.SLACK: ""})
        assert verifier.configured_sources() == ["github"]


class TestSlackReplayWindow:

    @pytest.mark.unit
    @pytest.mark.parametrize("age", [301, 600, -301, 86_400])
    def test_stale_or_future_timestamp_rejected_even_with_valid_signature(self, age: int) -> None:
        body = b'{"type":"event_callback"}'
        headers = _headers(Source.SLACK, SECRETS[Source.SLACK], body, timestamp=NOW - age)
        result = _verifier().verify(Source.SLACK, body, headers)
        assert not result.ok
        assert result.reason == "request timestamp outside tolerance"

    @pytest.mark.unit
    @pytest.mark.parametrize("age", [0, 1, 299, 300, -300])
    def test_timestamp_inside_window_accepted(self, age: int) -> None:
        body = b'{"type":"event_callback"}'
        headers = _headers(Source.SLACK, SECRETS[Source.SLACK], body, timestamp=NOW - age)
        assert _verifier().verify(Source.SLACK, body, headers).ok

    @pytest.mark.unit
    def test_custom_tolerance(self) -> None:
        body = b"{}"
        headers = _headers(Source.SLACK, SECRETS[Source.SLACK], body, timestamp=NOW - 30)
        assert not _verifier(slack_tolerance_seconds=10).verify(Source.SLACK, body, headers).ok


class TestSlackChallenge:

    @pytest.mark.unit
    def test_url_verification_returns_challenge(self) -> None:
        body = json.dumps({"type": "url_verification", "challenge": "abc123", "token": "t"}).encode()
        result = _verifier().verify(Source.SLACK, body, _headers(Source.SLACK, SECRETS[Source.SLACK], body))
        assert result.ok
        assert result.challenge == "abc123"

    @pytest.mark.unit
    def test_challenge_not_returned_when_signature_invalid(self) -> None:
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()
        result = _verifier().verify(Source.SLACK, body, _headers(Source.SLACK, "wrong", body))
        assert not result.ok
        assert result.challenge is None

    @pytest.mark.unit
    @given(challenge=text(min_size=1, max_size=80))
    @h_settings(max_examples=30)
    def test_challenge_echoed_verbatim(self, challenge: str) -> None:
        body = json.dumps({"type": "url_verification", "challenge": challenge}).encode()
        result = _verifier().verify(Source.SLACK, body, _headers(Source.SLACK, SECRETS[Source.SLACK], body))
        assert result.challenge == challenge

    @pytest.mark.unit
    def test_event_callback_has_no_challenge(self) -> None:
        body = b'{"type":"event_callback","event":{"type":"message"}}'
        result = _verifier().verify(Source.SLACK, body, _headers(Source.SLACK, SECRETS[Source.SLACK], body))
        assert result.ok
        assert result.challenge is None
