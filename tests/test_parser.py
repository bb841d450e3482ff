import json

import pytest

from conftest import PAYEE, requirement_payload
from x402_autopay.errors import InvalidAddress, InvalidAmount, MalformedRequirement
from x402_autopay.models import PaymentRequiredResponse, PaymentRequirement, ResourceResponse
from x402_autopay.parser import (
    encode_body,
    encode_headers,
    parse_amount,
    parse_payment_required,
)


def _response(body=None, headers=None, status=402):
    content = json.dumps(body).encode() if body is not None else b""
    return ResourceResponse(status, headers or {}, content)


def test_parses_structured_body():
    body = {
        "version": 1,
        "accepts": [requirement_payload(nonce="n-1", extras={"serviceId": "svc", "nested": {"a": 1}})],
        "message": "pay up",
    }
    terms = parse_payment_required(_response(body))

    assert terms.version == 1
    assert terms.message == "pay up"
    req = terms.accepts[0]
    assert req.scheme == "exact"
    assert req.network == "testnet"
    assert req.asset == "STT"
    assert req.amount == "1"
    assert req.pay_to == PAYEE
    assert req.nonce == "n-1"
    assert req.service_id == "svc"
    assert req.extras["nested"] == '{"a":1}'


def test_parses_mapping_input_and_x402_version_key():
    body = {"x402Version": 2, "accepts": [requirement_payload(maxAmountRequired="5", amount=None)]}
    terms = parse_payment_required({"headers": {}, "body": json.dumps(body)})
    assert terms.version == 2
    assert terms.accepts[0].amount == "5"


def test_missing_fields_are_named():
    payload = requirement_payload()
    del payload["asset"]
    del payload["payTo"]
    with pytest.raises(MalformedRequirement) as err:
        parse_payment_required(_response({"version": 1, "accepts": [payload]}))
    assert err.value.missing == ["asset", "payTo"]
    assert err.value.details["index"] == 0


def test_empty_accepts_is_malformed():
    with pytest.raises(MalformedRequirement):
        parse_payment_required(_response({"version": 1, "accepts": []}))


def test_response_without_terms_is_malformed():
    with pytest.raises(MalformedRequirement):
        parse_payment_required(_response(None))


@pytest.mark.parametrize("amount", ["abc", "1e", "NaN", "-1", "Infinity"])
def test_invalid_amounts(amount):
    with pytest.raises(InvalidAmount):
        parse_payment_required(_response({"version": 1, "accepts": [requirement_payload(amount=amount)]}))


def test_parse_amount_rejects_floats():
    with pytest.raises(InvalidAmount):
        parse_amount(0.1)


def test_json_number_amounts_keep_their_digits():
    raw = (
        b'{"version": 1, "accepts": [{"scheme": "exact", "network": "testnet", "asset": "STT",'
        b' "amount": 0.5, "payTo": "' + PAYEE.encode() + b'", "extras": {"rate": 1.25}}]}'
    )
    req = parse_payment_required(ResourceResponse(402, {}, raw)).accepts[0]
    assert req.amount == "0.5"
    assert req.extras["rate"] == 1.25

    whole = parse_payment_required(_response({"version": 1, "accepts": [requirement_payload(amount=3)]}))
    assert whole.accepts[0].amount == "3"


def test_invalid_address_on_evm_network():
    body = {"version": 1, "accepts": [requirement_payload(network="base", payTo="0x1234")]}
    with pytest.raises(InvalidAddress) as err:
        parse_payment_required(_response(body))
    assert err.value.network == "base"


def test_address_not_validated_on_unknown_network():
    body = {"version": 1, "accepts": [requirement_payload(network="testnet", payTo="0xabc")]}
    assert parse_payment_required(_response(body)).accepts[0].pay_to == "0xabc"


def test_caip2_network_is_validated():
    body = {"version": 1, "accepts": [requirement_payload(network="eip155:84532", payTo="not-an-address")]}
    with pytest.raises(InvalidAddress):
        parse_payment_required(_response(body))


def test_legacy_headers_fallback():
    headers = {
        "X-Payment-Amount": "0.25",
        "X-Payment-Token": "USDC",
        "X-Payment-Network": "base",
        "X-Payment-Recipient": PAYEE,
        "X-Payment-Description": "premium",
        "X-Payment-Expires": str(1_700_000_060),
        "X-Payment-Id": "pay-7",
        "X-Payment-Facilitator": "https://fac.test",
    }
    terms = parse_payment_required(_response(None, headers))

    req = terms.accepts[0]
    assert terms.message == "premium"
    assert req.scheme == "exact"
    assert req.asset == "USDC"
    assert req.amount == "0.25"
    assert req.expiry == 1_700_000_060
    assert req.facilitator_url == "https://fac.test"
    assert req.extras["paymentId"] == "pay-7"


def test_legacy_underscored_headers():
    headers = {
        "x_payment_amount": "2",
        "x_payment_asset": "STT",
        "x_payment_network": "somnia-testnet",
        "x_payment_recipient": PAYEE,
    }
    req = parse_payment_required(_response(None, headers)).accepts[0]
    assert req.amount == "2"
    assert req.network == "somnia-testnet"


def test_legacy_headers_use_default_network():
    headers = {"x-payment-amount": "2", "x-payment-asset": "STT", "x-payment-recipient": PAYEE}
    with pytest.raises(MalformedRequirement) as err:
        parse_payment_required(_response(None, headers))
    assert err.value.missing == ["network"]

    req = parse_payment_required(_response(None, headers), default_network="somnia-testnet").accepts[0]
    assert req.network == "somnia-testnet"


def test_body_wins_over_headers():
    body = {"version": 1, "accepts": [requirement_payload(amount="3")]}
    headers = {"x-payment-amount": "9", "x-payment-asset": "STT", "x-payment-recipient": PAYEE}
    assert parse_payment_required(_response(body, headers)).accepts[0].amount == "3"


def _sample_terms():
    return PaymentRequiredResponse(
        version=1,
        accepts=(
            PaymentRequirement(
                scheme="exact",
                network="base",
                asset="USDC",
                amount="0.010",
                pay_to=PAYEE,
                nonce="abc",
                expiry=1_700_000_100,
                extras={"facilitator": "https://fac.test"},
            ),
        ),
        message="hello",
    )


def test_body_round_trip():
    terms = _sample_terms()
    parsed = parse_payment_required(ResourceResponse(402, {}, encode_body(terms)))
    assert parsed == terms
    assert parsed.accepts[0].extras == terms.accepts[0].extras


def test_header_round_trip():
    terms = _sample_terms()
    parsed = parse_payment_required(ResourceResponse(402, encode_headers(terms), b""))
    assert parsed == terms
    assert parsed.accepts[0].facilitator_url == "https://fac.test"


def test_extras_do_not_affect_equality():
    a = PaymentRequirement("exact", "base", "USDC", "1", PAYEE, extras={"x": 1})
    b = PaymentRequirement("exact", "base", "USDC", "1", PAYEE, extras={"x": 2})
    assert a == b
    assert hash(a) == hash(b)
