"""In-memory FastAPI reference facilitator and paid resource.

Both apps keep all state in memory and are meant for local development and
end-to-end tests. Run one with::

    uvicorn "x402_autopay.server:create_facilitator_app" --factory --port 9100
"""

from __future__ import annotations

import inspect
import logging
import secrets
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Union

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from .constants import DEFAULT_PROTOCOL_VERSION, HEADER_PAYMENT_HASH, PAYMENT_REQUIRED_STATUS
from .models import (
    FacilitatorQuote,
    PaymentProof,
    PaymentRequiredResponse,
    PaymentRequirement,
    ServiceAccess,
    VerificationResult,
)
from .parser import encode_body

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]
ProofVerifier = Callable[[PaymentProof, FacilitatorQuote], Union[bool, Awaitable[bool]]]
HeaderVerifier = Callable[[Mapping[str, str]], Union[bool, Awaitable[bool]]]

DEMO_PAY_TO = "0x000000000000000000000000000000000000dEaD"
DEFAULT_PRICING: Dict[str, Dict[str, JsonDict]] = {
    "demo-ai": {
        "chat": {"amount": "0.01", "asset": "USDC", "network": "base-sepolia", "payTo": DEMO_PAY_TO},
        "image": {"amount": "0.05", "asset": "USDC", "network": "base-sepolia", "payTo": DEMO_PAY_TO},
    },
}
ACCESS_TTL_SECONDS = 3600

__all__ = ["create_facilitator_app", "create_paid_resource_app"]


def _error(status_code: int, code: str, message: str, details: Optional[JsonDict] = None) -> JSONResponse:
    body: JsonDict = {"code": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _amount_covers(paid: str, required: str) -> bool:
    try:
        return Decimal(paid) >= Decimal(required)
    except InvalidOperation:
        return False


def create_facilitator_app(
    verifier: Optional[ProofVerifier] = None,
    quote_ttl: int = 300,
    pricing: Optional[Mapping[str, Mapping[str, JsonDict]]] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Reference facilitator.

    ``pricing`` maps service id -> operation -> ``{amount, asset, network,
    payTo}``. ``verifier`` decides whether a proof really paid a quote; the
    default trusts proofs whose amount, asset and network match.
    Proof submission is idempotent per (quote, transaction) and each
    verification yields a single access grant.
    """
    app = FastAPI(title="x402 reference facilitator")
    prices = {k: dict(v) for k, v in (pricing or DEFAULT_PRICING).items()}

    quotes: Dict[str, FacilitatorQuote] = {}
    quote_service: Dict[str, str] = {}
    verifications: Dict[str, VerificationResult] = {}
    verification_quote: Dict[str, str] = {}
    by_transaction: Dict[str, VerificationResult] = {}
    tx_quote: Dict[str, str] = {}
    grants: Dict[str, ServiceAccess] = {}

    @app.get("/health")
    async def health() -> JsonDict:
        return {"status": "ok", "quotes": len(quotes), "verifications": len(verifications)}

    @app.post("/quotes")
    async def request_quote(payload: JsonDict) -> JSONResponse:
        service_id = payload.get("serviceId") or payload.get("service_id")
        operation = payload.get("operation")
        if not service_id or not operation:
            return _error(status.HTTP_400_BAD_REQUEST, "INVALID_QUOTE_REQUEST", "serviceId and operation are required")
        terms = prices.get(str(service_id), {}).get(str(operation))
        if terms is None:
            return _error(
                status.HTTP_400_BAD_REQUEST,
                "INVALID_QUOTE_REQUEST",
                f"unknown service/operation {service_id}/{operation}",
                {"serviceId": service_id, "operation": operation},
            )
        quote = FacilitatorQuote(
            quote_id=f"q_{uuid.uuid4().hex}",
            amount=str(terms["amount"]),
            asset=str(terms["asset"]),
            network=str(terms["network"]),
            pay_to=str(terms["payTo"]),
            expires_at=int(clock()) + quote_ttl,
            description=f"{service_id}/{operation}",
        )
        quotes[quote.quote_id] = quote
        quote_service[quote.quote_id] = str(operation)
        logger.info("issued quote %s for %s/%s", quote.quote_id, service_id, operation)
        return JSONResponse(quote.to_payload(), status_code=status.HTTP_201_CREATED)

    @app.post("/quotes/{quote_id}/proof")
    async def submit_proof(quote_id: str, payload: JsonDict) -> JSONResponse:
        quote = quotes.get(quote_id)
        if quote is None:
            return _error(status.HTTP_404_NOT_FOUND, "QUOTE_NOT_FOUND", f"unknown quote {quote_id}")
        proof = PaymentProof.from_payload(payload)
        if not proof.transaction_hash:
            return _error(status.HTTP_400_BAD_REQUEST, "INVALID_PROOF", "transactionHash is required")

        known = by_transaction.get(proof.transaction_hash)
        if known is not None:
            if tx_quote.get(proof.transaction_hash) == quote_id:
                return JSONResponse(known.to_payload())
            result = VerificationResult(verified=False, error="transaction already used for another quote")
            return JSONResponse(result.to_payload())

        if quote.is_expired(clock()):
            return _error(status.HTTP_410_GONE, "QUOTE_EXPIRED", f"quote {quote_id} has expired")

        error = None
        if proof.network != quote.network or proof.asset != quote.asset:
            error = "payment network or asset does not match quote"
        elif not _amount_covers(proof.amount, quote.amount):
            error = "payment amount is below the quoted amount"
        elif verifier is not None and not await _resolve(verifier(proof, quote)):
            error = "payment could not be verified"

        if error is None:
            result = VerificationResult(
                verified=True,
                verification_id=f"v_{uuid.uuid4().hex}",
                payment=proof.to_payload(),
                verified_at=clock(),
            )
            verifications[result.verification_id] = result
            verification_quote[result.verification_id] = quote_id
        else:
            result = VerificationResult(verified=False, error=error, verified_at=clock())
        by_transaction[proof.transaction_hash] = result
        tx_quote[proof.transaction_hash] = quote_id
        logger.info("proof %s for quote %s verified=%s", proof.transaction_hash, quote_id, result.verified)
        return JSONResponse(result.to_payload())

    @app.post("/quotes/{quote_id}/access")
    async def grant_access(quote_id: str, payload: JsonDict) -> JSONResponse:
        verification_id = str(payload.get("verificationId") or payload.get("verification_id") or "")
        verification = verifications.get(verification_id)
        if verification is None or verification_quote.get(verification_id) != quote_id:
            return _error(
                status.HTTP_403_FORBIDDEN,
                "ACCESS_DENIED",
                "no verified payment for this quote",
                {"quoteId": quote_id},
            )
        grant = grants.get(verification_id)
        if grant is None:
            grant = ServiceAccess(
                access_token=secrets.token_urlsafe(24),
                expires_at=int(clock()) + ACCESS_TTL_SECONDS,
                permissions=(quote_service.get(quote_id, "default"),),
            )
            grants[verification_id] = grant
        return JSONResponse(grant.to_payload())

    @app.get("/payments/verify")
    async def verify_payment(transactionHash: str, network: Optional[str] = None) -> JSONResponse:
        known = by_transaction.get(transactionHash)
        if known is None:
            return JSONResponse(VerificationResult(verified=False, error="unknown payment").to_payload())
        if network is not None and known.payment and known.payment.get("network") != network:
            return JSONResponse(VerificationResult(verified=False, error="network mismatch").to_payload())
        return JSONResponse(known.to_payload())

    @app.get("/payments/{payment_id}/status")
    async def payment_status(payment_id: str) -> JSONResponse:
        known = by_transaction.get(payment_id) or verifications.get(payment_id)
        if known is None:
            return _error(status.HTTP_404_NOT_FOUND, "PAYMENT_NOT_FOUND", f"unknown payment {payment_id}")
        return JSONResponse(
            {
                "paymentId": payment_id,
                "status": "confirmed" if known.verified else "failed",
                "details": known.to_payload(),
            }
        )

    return app


def create_paid_resource_app(
    accepts: Sequence[PaymentRequirement],
    verify_proof: Optional[HeaderVerifier] = None,
    *,
    path: str = "/protected",
    message: str = "Payment required",
    content: Optional[JsonDict] = None,
) -> FastAPI:
    """Resource that answers 402 until a request carries ``x-payment-hash``.

    ``verify_proof`` receives the request headers; by default any unused
    transaction hash is accepted. A hash is honoured once.
    """
    if not accepts:
        raise ValueError("accepts must contain at least one requirement")
    app = FastAPI(title="x402 paid resource")
    terms = PaymentRequiredResponse(version=DEFAULT_PROTOCOL_VERSION, accepts=tuple(accepts), message=message)
    body = encode_body(terms)
    used: set = set()

    def payment_required() -> Response:
        return Response(body, status_code=PAYMENT_REQUIRED_STATUS, media_type="application/json")

    @app.api_route(path, methods=["GET", "POST"])
    async def protected(request: Request) -> Response:
        tx_hash = request.headers.get(HEADER_PAYMENT_HASH)
        if not tx_hash:
            return payment_required()
        if tx_hash in used:
            logger.warning("rejecting reused payment %s", tx_hash)
            return payment_required()
        headers = {k.lower(): v for k, v in request.headers.items()}
        if verify_proof is not None and not await _resolve(verify_proof(headers)):
            logger.warning("payment %s rejected by verifier", tx_hash)
            return payment_required()
        used.add(tx_hash)
        return JSONResponse(
            {
                "message": "paid content",
                "data": content or {"secret": "This is protected content behind a paywall"},
                "payment": {
                    "transactionHash": tx_hash,
                    "network": headers.get("x-payment-network"),
                    "amount": headers.get("x-payment-amount"),
                    "asset": headers.get("x-payment-asset"),
                },
            }
        )

    return app
