"""Verification client: authority answers, rejections, and fallback policy."""

import asyncio
import json
import time

import httpx
import pytest

from lessonpay.common.errors import VERIFICATION_REJECTED, VERIFICATION_UNREACHABLE
from lessonpay.services.checkout.verification import VerificationClient

AUTHORITY_URL = "https://verify.example.test/payments/verify"


def make_client(handler, **kwargs):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("backoff_seconds", 0)
    return VerificationClient(url=AUTHORITY_URL, http_client=http_client, **kwargs)


def verify(client, reference="LSN_L1_S1_1"):
    return asyncio.run(client.verify(reference))


def test_confirmed_by_authority():
    """A success answer confirms and posts only the reference."""

    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "message": "Verification successful"})

    result = verify(make_client(handler))

    assert result.confirmed is True
    assert result.detail == "Verification successful"
    assert result.fallback_applied is False
    assert seen == [{"reference": "LSN_L1_S1_1"}]


def test_verifying_twice_gives_the_same_answer():
    """Repeated verification of one reference is safe."""

    def handler(request):
        return httpx.Response(200, json={"success": True, "message": "ok"})

    client = make_client(handler)

    async def twice():
        return await client.verify("LSN_L1_S1_1"), await client.verify("LSN_L1_S1_1")

    first, second = asyncio.run(twice())

    assert first.confirmed is True
    assert second.confirmed is True


@pytest.mark.parametrize("status_code", [200, 400, 404])
def test_rejection_is_authoritative(status_code):
    """success=false is final whatever the status code and policy."""

    def handler(request):
        return httpx.Response(status_code, json={"success": False, "message": "reference not found"})

    result = verify(make_client(handler, fallback="permissive"))

    assert result.confirmed is False
    assert result.detail == "reference not found"
    assert result.error_code == VERIFICATION_REJECTED
    assert result.fallback_applied is False


def test_rejection_without_message_gets_default_detail():
    """A bare rejection still carries a readable detail."""

    def handler(request):
        return httpx.Response(200, json={"success": False})

    result = verify(make_client(handler))

    assert result.detail == "verification rejected"


def timeout_handler(request):
    raise httpx.ReadTimeout("timed out", request=request)


def test_timeout_strict_fails():
    """Strict policy turns a timeout into a failure."""

    result = verify(make_client(timeout_handler, fallback="strict", timeout_seconds=0.1))

    assert result.confirmed is False
    assert result.error_code == VERIFICATION_UNREACHABLE
    assert result.detail.startswith("verification authority unreachable")


def test_timeout_permissive_confirms_with_fallback_flag():
    """Permissive policy confirms on timeout and flags the fallback."""

    result = verify(make_client(timeout_handler, fallback="permissive", timeout_seconds=0.1))

    assert result.confirmed is True
    assert result.fallback_applied is True
    assert result.detail.startswith("verification skipped")


def test_server_errors_are_retried_then_unreachable():
    """5xx answers are retried up to the attempt limit."""

    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="down for maintenance")

    result = verify(make_client(handler, max_attempts=3))

    assert len(calls) == 3
    assert result.confirmed is False
    assert "HTTP 503" in result.detail


def test_retry_recovers_after_transport_error():
    """A transient connection error is retried."""

    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"success": True, "message": "ok"})

    result = verify(make_client(handler, max_attempts=2))

    assert result.confirmed is True
    assert len(calls) == 2


@pytest.mark.parametrize("body", ["not json", json.dumps(["success"]), json.dumps({"success": "yes"})])
def test_malformed_body_counts_as_unreachable(body):
    """Bodies without a boolean success are not answers."""

    def handler(request):
        return httpx.Response(200, text=body)

    result = verify(make_client(handler))

    assert result.confirmed is False
    assert result.error_code == VERIFICATION_UNREACHABLE


def test_no_authority_configured():
    """Without an authority URL only the fallback policy decides."""

    strict = VerificationClient(url=None, fallback="strict")
    permissive = VerificationClient(url=None, fallback="permissive")

    assert verify(strict).confirmed is False
    assert verify(permissive).confirmed is True
    assert verify(permissive).fallback_applied is True


def test_unknown_policy_is_rejected():
    """Fallback policy must be one of the known names."""

    with pytest.raises(ValueError):
        VerificationClient(url=None, fallback="optimistic")


def trickling_handler(request):
    """Answers success, one byte every 50ms."""

    async def trickle():
        for byte in json.dumps({"success": True, "message": "Verification successful"}).encode():
            await asyncio.sleep(0.05)
            yield bytes([byte])

    return httpx.Response(200, headers={"content-type": "application/json"}, content=trickle())


def test_timeout_bounds_the_whole_exchange():
    """A body that keeps trickling in cannot stretch verification past the timeout."""

    client = make_client(trickling_handler, timeout_seconds=0.2, max_attempts=1)

    started = time.perf_counter()
    result = verify(client)
    elapsed = time.perf_counter() - started

    assert result.confirmed is False
    assert result.error_code == VERIFICATION_UNREACHABLE
    assert "timed out after 0.2s" in result.detail
    assert elapsed < 1.0
