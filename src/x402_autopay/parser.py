"""Parse 402 Payment Required responses into validated payment terms."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

from eth_utils import is_hex_address

from .constants import (
    DEFAULT_PROTOCOL_VERSION,
    EXACT_SCHEME,
    EXTRA_FACILITATOR,
    EXTRA_PAYMENT_ID,
    is_evm_network,
)
from .errors import InvalidAddress, InvalidAmount, MalformedRequirement
from .models import PaymentRequiredResponse, PaymentRequirement, ResourceResponse, normalize_extras

__all__ = [
    "encode_body",
    "encode_headers",
    "parse_amount",
    "parse_body",
    "parse_headers",
    "parse_payment_required",
    "validate_requirement",
]

JsonDict = Dict[str, Any]

_REQUIRED_FIELDS = ("scheme", "network", "asset", "amount", "payTo")

# Legacy header names, per field, in lookup order. Every name is also tried
# with underscores in place of hyphens.
_HEADER_PREFIXES = ("x-payment-", "x-402-", "x402-")
_HEADER_FIELDS = {
    "scheme": ("scheme",),
    "amount": ("amount",),
    "asset": ("asset", "token"),
    "network": ("network",),
    "payTo": ("recipient", "payto", "pay-to"),
    "nonce": ("nonce",),
    "expiry": ("expires", "expiry"),
    "description": ("description",),
    "id": ("id",),
    "facilitator": ("facilitator",),
}


def _first_present(data: Mapping[str, Any], *options: str) -> Optional[Any]:
    for key in options:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_amount(raw: Any) -> Decimal:
    """Parse a decimal amount string; raise :class:`InvalidAmount` otherwise."""
    if raw is None or isinstance(raw, bool):
        raise InvalidAmount(raw, "amount is required")
    if isinstance(raw, float):
        raise InvalidAmount(raw, "floating point amounts are not accepted")
    text = str(raw).strip()
    if not text:
        raise InvalidAmount(raw, "amount is empty")
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise InvalidAmount(raw) from exc
    if not value.is_finite():
        raise InvalidAmount(raw, "amount must be finite")
    if value < 0:
        raise InvalidAmount(raw, "amount must be non-negative")
    return value


def _parse_expiry(raw: Any, index: Optional[int]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(str(raw).strip(), 10)
    except ValueError as exc:
        raise MalformedRequirement(invalid=["expiry"], index=index) from exc


def validate_requirement(req: PaymentRequirement) -> PaymentRequirement:
    parse_amount(req.amount)
    if is_evm_network(req.network):
        if not (req.pay_to.lower().startswith("0x") and is_hex_address(req.pay_to)):
            raise InvalidAddress(req.pay_to, req.network)
    return req


def _amount_text(raw: Any) -> str:
    if isinstance(raw, Decimal):
        return format(raw, "f")
    return str(raw).strip()


def _requirement_from_mapping(data: Mapping[str, Any], index: Optional[int] = None) -> PaymentRequirement:
    if not isinstance(data, Mapping):
        raise MalformedRequirement("payment requirement must be a JSON object", index=index)

    values = {
        "scheme": _first_present(data, "scheme"),
        "network": _first_present(data, "network"),
        "asset": _first_present(data, "asset", "token"),
        "amount": _first_present(data, "amount", "maxAmountRequired", "max_amount_required"),
        "payTo": _first_present(data, "payTo", "pay_to", "payee", "recipient"),
    }
    missing = [name for name in _REQUIRED_FIELDS if values[name] is None]
    if missing:
        raise MalformedRequirement(missing=missing, index=index)

    parse_amount(values["amount"])
    nonce = _first_present(data, "nonce")
    extras_raw = _first_present(data, "extras", "extra")
    if extras_raw is not None and not isinstance(extras_raw, Mapping):
        raise MalformedRequirement(invalid=["extras"], index=index)

    requirement = PaymentRequirement(
        scheme=str(values["scheme"]),
        network=str(values["network"]),
        asset=str(values["asset"]),
        amount=_amount_text(values["amount"]),
        pay_to=str(values["payTo"]),
        nonce=str(nonce) if nonce is not None else None,
        expiry=_parse_expiry(_first_present(data, "expiry", "expiresAt"), index),
        extras=normalize_extras(extras_raw),
    )
    return validate_requirement(requirement)


def _decode_body(body: Union[bytes, str, Mapping[str, Any], None]) -> Optional[JsonDict]:
    if body is None:
        return None
    if isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, bytes):
        if not body.strip():
            return None
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not body.strip():
        return None
    try:
        decoded = json.loads(body, parse_float=Decimal)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


def parse_body(payload: Mapping[str, Any]) -> PaymentRequiredResponse:
    """Parse the structured ``{version, accepts, message}`` body."""
    accepts = payload.get("accepts")
    if not isinstance(accepts, list):
        raise MalformedRequirement("payment response missing accepts array", missing=["accepts"])
    if not accepts:
        raise MalformedRequirement("payment response accepts array is empty", invalid=["accepts"])

    version_raw = _first_present(payload, "version", "x402Version")
    try:
        version = int(version_raw) if version_raw is not None else DEFAULT_PROTOCOL_VERSION
    except (TypeError, ValueError) as exc:
        raise MalformedRequirement("payment response version is not an integer", invalid=["version"]) from exc

    requirements = tuple(
        _requirement_from_mapping(item, index) for index, item in enumerate(accepts)
    )
    message = payload.get("message")
    return PaymentRequiredResponse(
        version=version,
        accepts=requirements,
        message=str(message) if message is not None else None,
    )


def _header_lookup(headers: Mapping[str, str]):
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}

    def get(field_name: str) -> Optional[str]:
        for prefix in _HEADER_PREFIXES:
            for suffix in _HEADER_FIELDS[field_name]:
                name = prefix + suffix
                for candidate in (name, name.replace("-", "_")):
                    value = lowered.get(candidate)
                    if value is not None and value.strip():
                        return value.strip()
        return None

    return get


def parse_headers(
    headers: Mapping[str, str],
    *,
    default_network: Optional[str] = None,
) -> PaymentRequiredResponse:
    """Parse the legacy header-encoded payment terms (single requirement)."""
    get = _header_lookup(headers)
    values = {
        "scheme": get("scheme") or EXACT_SCHEME,
        "network": get("network") or default_network,
        "asset": get("asset"),
        "amount": get("amount"),
        "payTo": get("payTo"),
    }
    missing = [name for name in _REQUIRED_FIELDS if not values[name]]
    if missing:
        raise MalformedRequirement(missing=missing)

    extras: Dict[str, Any] = {}
    facilitator = get("facilitator")
    if facilitator:
        extras[EXTRA_FACILITATOR] = facilitator
    payment_id = get("id")
    if payment_id:
        extras[EXTRA_PAYMENT_ID] = payment_id

    return parse_body(
        {
            "version": DEFAULT_PROTOCOL_VERSION,
            "accepts": [
                {
                    **values,
                    "nonce": get("nonce"),
                    "expiry": get("expiry"),
                    "extras": extras,
                }
            ],
            "message": get("description"),
        }
    )


def _has_legacy_headers(headers: Mapping[str, str]) -> bool:
    get = _header_lookup(headers)
    return any(get(name) for name in ("amount", "asset", "payTo"))


def parse_payment_required(
    response: Union[ResourceResponse, Mapping[str, Any]],
    *,
    default_network: Optional[str] = None,
) -> PaymentRequiredResponse:
    """Parse a 402 response: structured body first, legacy headers second.

    ``response`` is a :class:`ResourceResponse` or a mapping with ``headers``
    and ``body`` keys.
    """
    if isinstance(response, ResourceResponse):
        headers: Mapping[str, str] = response.headers
        body: Any = response.content
    else:
        headers = response.get("headers") or {}
        body = response.get("body")

    payload = _decode_body(body)
    if payload is not None and "accepts" in payload:
        return parse_body(payload)
    if _has_legacy_headers(headers):
        return parse_headers(headers, default_network=default_network)
    if payload is not None:
        return parse_body(payload)
    raise MalformedRequirement("response carries no payment requirements", missing=["accepts"])


def encode_body(response: PaymentRequiredResponse) -> bytes:
    return json.dumps(response.to_payload(), separators=(",", ":")).encode("utf-8")


def encode_headers(response: PaymentRequiredResponse) -> Dict[str, str]:
    """Encode the first requirement as legacy ``x-payment-*`` headers."""
    req = response.accepts[0]
    headers = {
        "x-payment-scheme": req.scheme,
        "x-payment-network": req.network,
        "x-payment-asset": req.asset,
        "x-payment-amount": req.amount,
        "x-payment-recipient": req.pay_to,
    }
    if req.nonce is not None:
        headers["x-payment-nonce"] = req.nonce
    if req.expiry is not None:
        headers["x-payment-expires"] = str(req.expiry)
    if response.message is not None:
        headers["x-payment-description"] = response.message
    if req.facilitator_url:
        headers["x-payment-facilitator"] = req.facilitator_url
    payment_id = req.extras.get(EXTRA_PAYMENT_ID)
    if payment_id:
        headers["x-payment-id"] = str(payment_id)
    return headers

