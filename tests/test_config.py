import pytest

from paygate.config import (
    DEFAULT_REQUIRED_AMOUNT,
    DEVNET_RPC_URL,
    DEVNET_USDC_MINT,
    PaymentConfig,
    normalize_network,
)

ENV_VARS = (
    "X402_ENABLED", "X402_NETWORK", "SOLANA_RPC_URL", "SOLANA_DEVNET_RPC_URL",
    "X402_PAYMENT_WALLET", "X402_PAYMENT_AMOUNT_LAMPORTS", "X402_TOKEN_MINT",
    "STAKE_TOKEN_MINT", "REWARD_POOL_PROGRAM_ID", "PAYGATE_MODE", "DATABASE_URL",
    "PAYGATE_CONFIRM_TIMEOUT", "PAYGATE_CONFIRM_POLL_INTERVAL", "RPC_TIMEOUT",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.parametrize("value,expected", [
    ("solana-devnet", "devnet"),
    ("devnet", "devnet"),
    ("SOLANA-MAINNET", "mainnet"),
    ("mainnet-beta", "mainnet"),
    ("solana-testnet", "testnet"),
])
def test_normalize_network(value, expected):
    assert normalize_network(value) == expected


def test_normalize_network_rejects_unknown():
    with pytest.raises(ValueError):
        normalize_network("solana-localnet")


def test_defaults(clean_env):
    config = PaymentConfig.from_env()
    assert config.network == "devnet"
    assert config.rpc_url == DEVNET_RPC_URL
    assert config.token_mint == DEVNET_USDC_MINT
    assert config.required_amount == DEFAULT_REQUIRED_AMOUNT
    assert config.x402_enabled is False
    assert config.mode == "wallet"
    assert config.network_label == "solana-devnet"


def test_mainnet_uses_mainnet_rpc(clean_env):
    clean_env.setenv("X402_NETWORK", "solana-mainnet")
    clean_env.setenv("SOLANA_RPC_URL", "https://rpc.example")
    clean_env.setenv("SOLANA_DEVNET_RPC_URL", "https://devnet.example")
    config = PaymentConfig.from_env()
    assert config.network == "mainnet"
    assert config.rpc_url == "https://rpc.example"


def test_reward_pool_prefers_stake_mint(clean_env):
    clean_env.setenv("PAYGATE_MODE", "reward_pool")
    clean_env.setenv("X402_TOKEN_MINT", "wallet-mint")
    clean_env.setenv("STAKE_TOKEN_MINT", "stake-mint")
    clean_env.setenv("X402_ENABLED", "true")
    config = PaymentConfig.from_env()
    assert config.token_mint == "stake-mint"
    assert config.x402_enabled is True


def test_invalid_values(clean_env):
    clean_env.setenv("X402_PAYMENT_AMOUNT_LAMPORTS", "lots")
    with pytest.raises(ValueError, match="integer"):
        PaymentConfig.from_env()

    clean_env.setenv("X402_PAYMENT_AMOUNT_LAMPORTS", "-1")
    with pytest.raises(ValueError, match="negative"):
        PaymentConfig.from_env()

    clean_env.setenv("X402_PAYMENT_AMOUNT_LAMPORTS", "100")
    clean_env.setenv("PAYGATE_MODE", "escrow")
    with pytest.raises(ValueError, match="mode"):
        PaymentConfig.from_env()
