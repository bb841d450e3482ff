import json

import pytest

httpx = pytest.importorskip("httpx")

from conftest import NOW, PAYEE
from x402_autopay.backoff import BackoffPolicy
from x402_autopay.errors import (
    AccessDenied,
    FacilitatorRequestError,
    FacilitatorUnavailable,
    InvalidQuoteRequest,
    QuoteExpired,
)
from x402_autopay.facilitator import (
    FacilitatorClient,
    FacilitatorConfig,
    FacilitatorHandshake,
    QuoteState,
)
from x402_autopay.models import PaymentProof, PaymentRecord, PaymentStatus

BASE_URL = "http://fac.test"

QUOTE = {
    "id": "q1",
    "amount": "0.05",
    "asset": "USDC",
    "network": "base",
    "payTo": PAYEE,
    "expiresAt": NOW + 300,
    "description": "svc/chat",
}

PROOF = PaymentProof(
    transaction_hash="0xfeed",
    block_number=12,
    network="base",
    amount="0.05",
    asset="USDC",
    timestamp=NOW,
)


def _client(handler, **config):
    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    config.setdefault("retry", BackoffPolicy(max_attempts=3, base_delay=0.5, jitter=0.0))
    client = FacilitatorClient(
        FacilitatorConfig(url=BASE_URL, http_client=async_client, **config),
        sleep=fake_sleep,
    )
    return client, async_client, sleeps


@pytest.mark.asyncio
async def test_request_quote_success():
    def handler(request):
        assert request.url.path == "/quotes"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content.decode())
        assert body == {"serviceId": "svc", "operation": "chat", "network": "base"}
        return httpx.Response(201, json=QUOTE)

    client, async_client, _ = _client(handler, api_key="secret")
    try:
        quote = await client.request_quote("svc", "chat", network="base")
        assert quote.quote_id == "q1"
        assert quote.to_requirement().quote_id == "q1"
        assert quote.to_requirement().amount == "0.05"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_request_quote_invalid_pair():
    def handler(request):
        return httpx.Response(400, json={"code": "INVALID_QUOTE_REQUEST", "message": "unknown service"})

    client, async_client, sleeps = _client(handler)
    try:
        with pytest.raises(InvalidQuoteRequest) as err:
            await client.request_quote("nope", "chat")
        assert err.value.status_code == 400
        assert err.value.message == "unknown service"
        assert sleeps == []
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_request_quote_retries_server_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"code": "BUSY", "message": "try later"})
        return httpx.Response(200, json=QUOTE)

    client, async_client, sleeps = _client(handler)
    try:
        quote = await client.request_quote("svc", "chat")
        assert quote.quote_id == "q1"
        assert sleeps == [0.5, 1.0]
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_request_quote_unavailable_after_retries():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, async_client, sleeps = _client(handler)
    try:
        with pytest.raises(FacilitatorUnavailable):
            await client.request_quote("svc", "chat")
        assert len(sleeps) == 2
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_malformed_quote_response():
    def handler(request):
        return httpx.Response(200, json={"id": "q1"})

    client, async_client, _ = _client(handler)
    try:
        with pytest.raises(FacilitatorRequestError):
            await client.request_quote("svc", "chat")
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_submit_proof_is_idempotent():
    proof_calls = []
    access_calls = []

    def handler(request):
        if request.url.path == "/quotes/q1/proof":
            proof_calls.append(json.loads(request.content))
            return httpx.Response(200, json={"verified": True, "verificationId": "v1", "verifiedAt": NOW})
        if request.url.path == "/quotes/q1/access":
            access_calls.append(json.loads(request.content))
            return httpx.Response(200, json={"accessToken": f"tok-{len(access_calls)}", "expiresAt": NOW + 60})
        return httpx.Response(404)

    client, async_client, _ = _client(handler)
    try:
        first = await client.submit_proof("q1", PROOF)
        second = await client.submit_proof("q1", PROOF)
        assert first == second
        assert len(proof_calls) == 1
        assert proof_calls[0]["transactionHash"] == "0xfeed"

        grant_a = await client.get_access("q1", first.verification_id)
        grant_b = await client.get_access("q1", second.verification_id)
        assert grant_a == grant_b
        assert len(access_calls) == 1
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_ambiguous_proof_failure_checks_payment_before_resubmitting():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path == "/quotes/q1/proof":
            raise httpx.ReadTimeout("timed out", request=request)
        if request.url.path == "/payments/verify":
            assert request.url.params["transactionHash"] == "0xfeed"
            assert request.url.params["network"] == "base"
            return httpx.Response(200, json={"verified": True, "verificationId": "v9"})
        return httpx.Response(404)

    client, async_client, _ = _client(handler)
    try:
        result = await client.submit_proof("q1", PROOF)
        assert result.verification_id == "v9"
        assert calls == ["/quotes/q1/proof", "/payments/verify"]
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_ambiguous_proof_failure_resubmits_once_when_unknown():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path == "/quotes/q1/proof":
            if calls.count("/quotes/q1/proof") == 1:
                return httpx.Response(502, json={"code": "BAD_GATEWAY", "message": "upstream"})
            return httpx.Response(200, json={"verified": True, "verificationId": "v2"})
        if request.url.path == "/payments/verify":
            return httpx.Response(200, json={"verified": False, "error": "unknown payment"})
        return httpx.Response(404)

    client, async_client, _ = _client(handler)
    try:
        result = await client.submit_proof("q1", PROOF)
        assert result.verification_id == "v2"
        assert calls == ["/quotes/q1/proof", "/payments/verify", "/quotes/q1/proof"]
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_access_denied_after_failed_verification():
    access_calls = []

    def handler(request):
        if request.url.path == "/quotes/q1/proof":
            return httpx.Response(200, json={"verified": False, "error": "amount too low"})
        access_calls.append(request)
        return httpx.Response(200, json={"accessToken": "tok", "expiresAt": NOW + 60})

    client, async_client, _ = _client(handler)
    try:
        result = await client.submit_proof("q1", PROOF)
        assert not result.verified
        with pytest.raises(AccessDenied):
            await client.get_access("q1", "v1")
        assert access_calls == []
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_access_forbidden_by_facilitator():
    def handler(request):
        return httpx.Response(403, json={"code": "FORBIDDEN", "message": "no"})

    client, async_client, _ = _client(handler)
    try:
        with pytest.raises(AccessDenied) as err:
            await client.get_access("q1", "v1")
        assert err.value.status_code == 403
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_expired_quote_error():
    def handler(request):
        return httpx.Response(410, json={"code": "QUOTE_EXPIRED", "message": "too late"})

    client, async_client, _ = _client(handler)
    try:
        with pytest.raises(QuoteExpired):
            await client.submit_proof("q1", PROOF)
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_payment_status_and_health():
    def handler(request):
        if request.url.path == "/payments/0xfeed/status":
            return httpx.Response(200, json={"paymentId": "0xfeed", "status": "confirmed", "details": {"block": 12}})
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(404)

    client, async_client, _ = _client(handler)
    try:
        report = await client.get_payment_status("0xfeed")
        assert report.status is PaymentStatus.CONFIRMED
        assert report.details == {"block": 12}
        assert (await client.health_check())["status"] == "ok"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    client, async_client, _ = _client(lambda request: httpx.Response(200, json={}))
    await client.aclose()
    assert not async_client.is_closed
    await async_client.aclose()


def _record(requirement):
    record = PaymentRecord(
        request_id="r1",
        transaction_hash="0xfeed",
        amount=requirement.amount,
        asset=requirement.asset,
        network=requirement.network,
        pay_to=requirement.pay_to,
        timestamp=NOW,
    )
    record.confirm(12)
    return record


@pytest.mark.asyncio
async def test_handshake_walks_every_state():
    def handler(request):
        if request.url.path == "/quotes":
            return httpx.Response(201, json=QUOTE)
        if request.url.path == "/quotes/q1/proof":
            return httpx.Response(200, json={"verified": True, "verificationId": "v1"})
        if request.url.path == "/quotes/q1/access":
            return httpx.Response(200, json={"accessToken": "tok", "expiresAt": NOW + 60, "permissions": ["chat"]})
        return httpx.Response(404)

    paid = []

    async def pay(requirement):
        paid.append(requirement)
        return _record(requirement)

    client, async_client, _ = _client(handler)
    handshake = FacilitatorHandshake(client, clock=lambda: NOW)
    try:
        result = await handshake.run("svc", "chat", pay)
    finally:
        await async_client.aclose()

    assert result.access.permissions == ("chat",)
    assert paid[0].quote_id == "q1"
    assert handshake.state is QuoteState.ACCESS_GRANTED
    assert handshake.history == [
        QuoteState.QUOTE_REQUESTED,
        QuoteState.QUOTED,
        QuoteState.PROOF_SUBMITTED,
        QuoteState.VERIFIED,
        QuoteState.ACCESS_GRANTED,
    ]


@pytest.mark.asyncio
async def test_handshake_refreshes_lapsed_quote():
    quotes = [dict(QUOTE, id="old", expiresAt=NOW - 1), QUOTE]

    def handler(request):
        if request.url.path == "/quotes":
            return httpx.Response(201, json=quotes.pop(0))
        if request.url.path == "/quotes/q1/proof":
            return httpx.Response(200, json={"verified": True, "verificationId": "v1"})
        if request.url.path == "/quotes/q1/access":
            return httpx.Response(200, json={"accessToken": "tok", "expiresAt": NOW + 60})
        return httpx.Response(404)

    async def pay(requirement):
        return _record(requirement)

    client, async_client, _ = _client(handler)
    handshake = FacilitatorHandshake(client, clock=lambda: NOW)
    try:
        result = await handshake.run("svc", "chat", pay)
    finally:
        await async_client.aclose()

    assert result.quote.quote_id == "q1"
    assert handshake.history[:4] == [
        QuoteState.QUOTE_REQUESTED,
        QuoteState.QUOTED,
        QuoteState.QUOTE_REQUESTED,
        QuoteState.QUOTED,
    ]


@pytest.mark.asyncio
async def test_handshake_gives_up_when_every_quote_lapses():
    def handler(request):
        return httpx.Response(201, json=dict(QUOTE, expiresAt=NOW - 1))

    async def pay(requirement):
        raise AssertionError("must not pay an expired quote")

    client, async_client, _ = _client(handler)
    handshake = FacilitatorHandshake(client, clock=lambda: NOW, max_quote_refreshes=1)
    try:
        with pytest.raises(QuoteExpired):
            await handshake.run("svc", "chat", pay)
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_handshake_rejected_proof_denies_access():
    def handler(request):
        if request.url.path == "/quotes":
            return httpx.Response(201, json=QUOTE)
        return httpx.Response(200, json={"verified": False, "error": "wrong payee"})

    async def pay(requirement):
        return _record(requirement)

    client, async_client, _ = _client(handler)
    try:
        with pytest.raises(AccessDenied):
            await FacilitatorHandshake(client, clock=lambda: NOW).run("svc", "chat", pay)
    finally:
        await async_client.aclose()
