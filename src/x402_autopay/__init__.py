"""Automatic HTTP 402 payments for async Python clients."""

from __future__ import annotations

from .backoff import BackoffPolicy, retry_async
from .config import EngineConfig, load_engine_config
from .constants import (
    NETWORKS,
    PAYMENT_REQUIRED_STATUS,
    SUPPORTED_NETWORKS,
    UnsupportedNetworkError,
    get_network,
    get_token,
)
from .engine import EngineState, ProtocolEngine, proof_headers
from .errors import (
    AccessDenied,
    Cancelled,
    ConfigError,
    FacilitatorError,
    FacilitatorRequestError,
    FacilitatorUnavailable,
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidPaymentResponse,
    InvalidQuoteRequest,
    MalformedRequirement,
    NoAcceptableRequirement,
    ParseError,
    PaymentFailed,
    QuoteExpired,
    RecordStateError,
    RetriedRequestFailed,
    SpendingLimitExceeded,
    X402Error,
)
from .executor import PaymentExecutor
from .facilitator import (
    FacilitatorClient,
    FacilitatorConfig,
    FacilitatorHandshake,
    HandshakeResult,
    QuoteState,
)
from .http import HttpClient, HttpxTransport
from .limits import LimitDecision, SpendingLimits, SpendingLimitTracker
from .models import (
    FacilitatorQuote,
    PaymentProof,
    PaymentRecord,
    PaymentRequiredResponse,
    PaymentRequirement,
    PaymentStatus,
    ResourceRequest,
    ResourceResponse,
    ServiceAccess,
    VerificationResult,
)
from .observer import FetchObserver
from .parser import encode_body, encode_headers, parse_payment_required
from .selector import select_requirement
from .wallet import RpcWallet, Wallet, WalletError

__all__ = [
    "AccessDenied",
    "BackoffPolicy",
    "Cancelled",
    "ConfigError",
    "EngineConfig",
    "EngineState",
    "FacilitatorClient",
    "FacilitatorConfig",
    "FacilitatorError",
    "FacilitatorHandshake",
    "FacilitatorQuote",
    "FacilitatorRequestError",
    "FacilitatorUnavailable",
    "FetchObserver",
    "HandshakeResult",
    "HttpClient",
    "HttpxTransport",
    "InsufficientBalance",
    "InvalidAddress",
    "InvalidAmount",
    "InvalidPaymentResponse",
    "InvalidQuoteRequest",
    "LimitDecision",
    "MalformedRequirement",
    "NETWORKS",
    "NoAcceptableRequirement",
    "PAYMENT_REQUIRED_STATUS",
    "ParseError",
    "PaymentExecutor",
    "PaymentFailed",
    "PaymentProof",
    "PaymentRecord",
    "PaymentRequiredResponse",
    "PaymentRequirement",
    "PaymentStatus",
    "ProtocolEngine",
    "QuoteExpired",
    "QuoteState",
    "RecordStateError",
    "ResourceRequest",
    "ResourceResponse",
    "RetriedRequestFailed",
    "RpcWallet",
    "SUPPORTED_NETWORKS",
    "ServiceAccess",
    "SpendingLimitExceeded",
    "SpendingLimitTracker",
    "SpendingLimits",
    "UnsupportedNetworkError",
    "VerificationResult",
    "Wallet",
    "WalletError",
    "X402Error",
    "encode_body",
    "encode_headers",
    "get_network",
    "get_token",
    "load_engine_config",
    "parse_payment_required",
    "proof_headers",
    "retry_async",
    "select_requirement",
]

try:  # Optional: reference server depends on fastapi
    from .server import create_facilitator_app, create_paid_resource_app

    __all__.extend(["create_facilitator_app", "create_paid_resource_app"])
except ImportError:
    create_facilitator_app = None  # type: ignore[assignment]
    create_paid_resource_app = None  # type: ignore[assignment]
