import pytest

from x402_autopay.constants import (
    NETWORKS,
    SUPPORTED_NETWORKS,
    UnsupportedNetworkError,
    get_network,
    get_token,
    is_evm_network,
)


def test_supported_networks_match_expected():
    assert SUPPORTED_NETWORKS == [
        "somnia-testnet",
        "ethereum",
        "sepolia",
        "base",
        "base-sepolia",
        "polygon",
        "arbitrum",
    ]


def test_chain_ids_match_expected():
    assert NETWORKS["somnia-testnet"]["chain_id"] == 50312
    assert NETWORKS["sepolia"]["chain_id"] == 11155111
    assert NETWORKS["base"]["chain_id"] == 8453
    assert NETWORKS["base-sepolia"]["chain_id"] == 84532


def test_get_network_is_case_insensitive():
    assert get_network("Somnia-Testnet")["native_symbol"] == "STT"


def test_get_token_by_symbol_and_address():
    usdc = get_token("sepolia", "USDC")
    assert usdc["address"] == "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
    assert usdc["decimals"] == 6
    assert get_token("sepolia", "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238") == usdc


def test_get_token_returns_none_for_native_asset():
    assert get_token("base", "eth") is None


def test_get_token_raises_on_unknown_token():
    with pytest.raises(UnsupportedNetworkError):
        get_token("polygon", "USDC")


def test_get_network_raises_on_unsupported_network():
    with pytest.raises(UnsupportedNetworkError):
        get_network("eip155:1")


def test_is_evm_network():
    assert is_evm_network("base")
    assert is_evm_network("eip155:84532")
    assert not is_evm_network("testnet")
    assert not is_evm_network("solana")
