"""Environment-driven configuration for the payment gate."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
DEVNET_RPC_URL = "https://api.devnet.solana.com"

DEVNET_USDC_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
DEFAULT_REWARD_POOL_PROGRAM_ID = "D6yD4d3ZEGxpdgbFHWTwMSpr9iGrnapLK5QCLvehoiDr"
REWARD_POOL_SEED = b"reward_pool"

DEFAULT_REQUIRED_AMOUNT = 100_000  # 0.1 USDC at 6 decimals

NETWORKS = ("mainnet", "devnet", "testnet")
MODES = ("wallet", "reward_pool")


def normalize_network(value):
    """Accept both ``solana-devnet`` and ``devnet`` spellings."""
    name = (value or "").strip().lower()
    if name.startswith("solana-"):
        name = name[len("solana-"):]
    if name == "mainnet-beta":
        name = "mainnet"
    if name not in NETWORKS:
        raise ValueError(f"Unsupported network {value!r}; expected one of {NETWORKS}")
    return name


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class PaymentConfig:
    network: str = "devnet"
    rpc_url: str = DEVNET_RPC_URL
    token_mint: str = DEVNET_USDC_MINT
    required_amount: int = DEFAULT_REQUIRED_AMOUNT
    payment_wallet: str = None
    reward_pool_program_id: str = DEFAULT_REWARD_POOL_PROGRAM_ID
    mode: str = "wallet"
    x402_enabled: bool = False
    database_url: str = "sqlite:///paygate.db"
    rpc_timeout: float = 12
    confirm_timeout: float = 60.0
    confirm_poll_interval: float = 1.0

    def __post_init__(self):
        if self.network not in NETWORKS:
            raise ValueError(f"Unsupported network {self.network!r}")
        if self.mode not in MODES:
            raise ValueError(f"Unsupported mode {self.mode!r}; expected one of {MODES}")
        if self.required_amount < 0:
            raise ValueError("required_amount must not be negative")

    @property
    def network_label(self):
        """Network name in the ``solana-<network>`` form x402 clients send."""
        return f"solana-{self.network}"

    @classmethod
    def from_env(cls):
        network = normalize_network(os.environ.get("X402_NETWORK", "solana-devnet"))
        if network == "devnet":
            rpc_url = os.environ.get("SOLANA_DEVNET_RPC_URL", DEVNET_RPC_URL)
        else:
            rpc_url = os.environ.get("SOLANA_RPC_URL", MAINNET_RPC_URL)

        mode = os.environ.get("PAYGATE_MODE", "wallet").strip().lower()
        if mode == "reward_pool":
            token_mint = os.environ.get("STAKE_TOKEN_MINT") or os.environ.get("X402_TOKEN_MINT")
        else:
            token_mint = os.environ.get("X402_TOKEN_MINT")

        return cls(
            network=network,
            rpc_url=rpc_url,
            token_mint=token_mint or DEVNET_USDC_MINT,
            required_amount=_env_int("X402_PAYMENT_AMOUNT_LAMPORTS", DEFAULT_REQUIRED_AMOUNT),
            payment_wallet=os.environ.get("X402_PAYMENT_WALLET") or None,
            reward_pool_program_id=os.environ.get(
                "REWARD_POOL_PROGRAM_ID", DEFAULT_REWARD_POOL_PROGRAM_ID
            ),
            mode=mode,
            x402_enabled=_env_bool("X402_ENABLED"),
            database_url=os.environ.get("DATABASE_URL", "sqlite:///paygate.db"),
            rpc_timeout=_env_float("RPC_TIMEOUT", 12),
            confirm_timeout=_env_float("PAYGATE_CONFIRM_TIMEOUT", 60.0),
            confirm_poll_interval=_env_float("PAYGATE_CONFIRM_POLL_INTERVAL", 1.0),
        )
