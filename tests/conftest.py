import base64
import struct
from unittest.mock import MagicMock

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from paygate.config import TOKEN_PROGRAM_ID, PaymentConfig
from paygate.repository import PaymentRepository

MINT = str(Keypair().pubkey())
RECIPIENT_WALLET = str(Keypair().pubkey())
RECIPIENT_TOKEN_ACCOUNT = str(Keypair().pubkey())
REQUIRED_AMOUNT = 100_000


def transfer_instruction(source, destination, authority, amount, program_id=TOKEN_PROGRAM_ID, tag=3):
    """SPL Token Transfer: [tag:u8][amount:u64 LE]; accounts source, destination, authority."""
    return Instruction(
        Pubkey.from_string(program_id),
        struct.pack("<BQ", tag, amount),
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def build_payment(amount=REQUIRED_AMOUNT, payer=None, extra_instructions=(), instructions=None, sign=True):
    """Return ``(base64_tx, signature, source_token_account)`` for a transfer paid by ``payer``."""
    payer = payer or Keypair()
    source = Keypair().pubkey()
    destination = Pubkey.from_string(RECIPIENT_TOKEN_ACCOUNT)
    if instructions is None:
        instructions = [transfer_instruction(source, destination, payer.pubkey(), amount)]
    instructions = list(instructions) + list(extra_instructions)
    message = Message(instructions, payer.pubkey())
    if sign:
        tx = Transaction([payer], message, Hash.default())
    else:
        tx = Transaction.new_unsigned(message)
    encoded = base64.b64encode(bytes(tx)).decode("ascii")
    return encoded, str(tx.signatures[0]), str(source)


def token_balance(index, amount, owner=RECIPIENT_WALLET, mint=MINT):
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 6},
    }


def fetched_transaction(amount=REQUIRED_AMOUNT, owner=RECIPIENT_WALLET, mint=MINT,
                        recipient_account=RECIPIENT_TOKEN_ACCOUNT, sender_owner=None,
                        slot=250_000_000, block_time=1_700_000_000):
    """Minimal getTransaction (json encoding) result for a single transfer."""
    sender_owner = sender_owner or str(Keypair().pubkey())
    source_account = str(Keypair().pubkey())
    return {
        "slot": slot,
        "blockTime": block_time,
        "transaction": {
            "message": {
                "accountKeys": [sender_owner, source_account, recipient_account, TOKEN_PROGRAM_ID],
            },
        },
        "meta": {
            "err": None,
            "preTokenBalances": [
                token_balance(1, 5_000_000, owner=sender_owner, mint=mint),
                token_balance(2, 0, owner=owner, mint=mint),
            ],
            "postTokenBalances": [
                token_balance(1, 5_000_000 - amount, owner=sender_owner, mint=mint),
                token_balance(2, amount, owner=owner, mint=mint),
            ],
            "logMessages": [],
        },
    }


@pytest.fixture
def repository():
    repo = PaymentRepository("sqlite://")
    repo.create_all()
    yield repo
    repo.engine.dispose()


@pytest.fixture
def config():
    return PaymentConfig(
        network="devnet",
        rpc_url="http://rpc.test",
        token_mint=MINT,
        required_amount=REQUIRED_AMOUNT,
        payment_wallet=RECIPIENT_WALLET,
        database_url="sqlite://",
        confirm_timeout=0.0,
        confirm_poll_interval=0.0,
    )


@pytest.fixture
def rpc():
    """RPC double that accepts, confirms and returns a matching transfer."""
    client = MagicMock()
    client.simulate_transaction.return_value = {"err": None, "logs": []}
    client.send_transaction.side_effect = lambda raw: str(Transaction.from_bytes(raw).signatures[0])
    client.confirm_transaction.return_value = {"err": None, "confirmationStatus": "confirmed"}
    client.get_transaction.return_value = fetched_transaction()
    return client
