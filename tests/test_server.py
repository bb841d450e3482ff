from decimal import Decimal

import pytest

fastapi = pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from conftest import NOW, PAYEE
from x402_autopay.config import EngineConfig
from x402_autopay.engine import ProtocolEngine
from x402_autopay.errors import InvalidQuoteRequest
from x402_autopay.facilitator import FacilitatorClient, FacilitatorConfig
from x402_autopay.http import HttpxTransport
from x402_autopay.models import PaymentProof, PaymentRequirement
from x402_autopay.server import create_facilitator_app, create_paid_resource_app

PRICING = {"svc": {"chat": {"amount": "0.05", "asset": "STT", "network": "testnet", "payTo": PAYEE}}}


def _asgi_client(app, base_url):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url)


@pytest.mark.asyncio
async def test_paid_resource_requires_payment_then_serves():
    requirement = PaymentRequirement("exact", "testnet", "STT", "1", PAYEE, expiry=NOW + 60)
    app = create_paid_resource_app([requirement])
    client = _asgi_client(app, "http://paid.test")
    try:
        first = await client.get("/protected")
        assert first.status_code == 402
        assert first.json()["accepts"][0]["payTo"] == PAYEE

        paid = await client.get("/protected", headers={"x-payment-hash": "0x01", "x-payment-amount": "1"})
        assert paid.status_code == 200
        assert paid.json()["payment"]["amount"] == "1"

        reused = await client.get("/protected", headers={"x-payment-hash": "0x01"})
        assert reused.status_code == 402
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_paid_resource_verifier_can_reject():
    requirement = PaymentRequirement("exact", "testnet", "STT", "1", PAYEE)

    async def verify(headers):
        return headers.get("x-payment-amount") == "1"

    client = _asgi_client(create_paid_resource_app([requirement], verify), "http://paid.test")
    try:
        short = await client.get("/protected", headers={"x-payment-hash": "0x02", "x-payment-amount": "0.5"})
        assert short.status_code == 402
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_engine_pays_reference_resource_end_to_end(wallet):
    requirement = PaymentRequirement("exact", "testnet", "STT", "1", PAYEE, expiry=NOW + 60)
    async_client = _asgi_client(create_paid_resource_app([requirement]), "http://paid.test")
    engine = ProtocolEngine(HttpxTransport(async_client), wallet, clock=lambda: NOW)
    try:
        response = await engine.get("http://paid.test/protected")
    finally:
        await async_client.aclose()

    assert response.status_code == 200
    assert response.json()["payment"]["transactionHash"] == response.payment.transaction_hash
    assert engine.current_spending("testnet", "STT") == Decimal("1")


@pytest.mark.asyncio
async def test_reference_facilitator_full_handshake():
    app = create_facilitator_app(pricing=PRICING, clock=lambda: NOW)
    async_client = _asgi_client(app, "http://fac.test")
    client = FacilitatorClient(FacilitatorConfig(url="http://fac.test", http_client=async_client))
    try:
        assert (await client.health_check())["status"] == "ok"

        quote = await client.request_quote("svc", "chat")
        assert quote.amount == "0.05"
        assert quote.expires_at == NOW + 300

        proof = PaymentProof("0xabc1", 7, "testnet", "0.05", "STT", NOW)
        first = await client.submit_proof(quote.quote_id, proof)
        assert first.verified

        fresh = FacilitatorClient(FacilitatorConfig(url="http://fac.test", http_client=async_client))
        again = await fresh.submit_proof(quote.quote_id, proof)
        assert again.verification_id == first.verification_id

        grant_a = await client.get_access(quote.quote_id, first.verification_id)
        grant_b = await fresh.get_access(quote.quote_id, again.verification_id)
        assert grant_a.access_token == grant_b.access_token
        assert grant_a.permissions == ("chat",)

        verified = await client.verify_payment("0xabc1", "testnet")
        assert verified.verification_id == first.verification_id
        status = await client.get_payment_status("0xabc1")
        assert status.status.value == "confirmed"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_reference_facilitator_rejects_short_payment_and_unknown_service():
    app = create_facilitator_app(pricing=PRICING, clock=lambda: NOW)
    async_client = _asgi_client(app, "http://fac.test")
    client = FacilitatorClient(FacilitatorConfig(url="http://fac.test", http_client=async_client))
    try:
        with pytest.raises(InvalidQuoteRequest):
            await client.request_quote("svc", "paint")

        quote = await client.request_quote("svc", "chat")
        result = await client.submit_proof(quote.quote_id, PaymentProof("0xabc2", 7, "testnet", "0.01", "STT", NOW))
        assert not result.verified
        assert "below" in result.error

        unknown = await client.verify_payment("0xdead", "testnet")
        assert not unknown.verified
    finally:
        await async_client.aclose()
