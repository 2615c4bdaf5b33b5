"""
Wire-transaction decoding and SPL Token transfer instruction parsing.
"""

import base64
import binascii
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from paygate.config import TOKEN_PROGRAM_ID

# SPL Token instruction tag for Transfer: [tag:u8][amount:u64 LE]
TRANSFER_TAG = 3
TRANSFER_DATA_LEN = 9


class MalformedTransactionError(ValueError):
    pass


class TransferInstructionError(ValueError):
    pass


@dataclass(frozen=True)
class DecodedTransaction:
    raw: bytes
    transaction: Transaction
    signature: str


@dataclass(frozen=True)
class TransferInstruction:
    amount: int
    source: str
    destination: str
    authority: str = None


def decode_transaction(encoded):
    """Decode a base64 legacy transaction and extract its first signature."""
    if not encoded or not isinstance(encoded, str):
        raise MalformedTransactionError("Transaction payload must be a non-empty base64 string")
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedTransactionError(f"Transaction is not valid base64: {e}") from e

    try:
        tx = Transaction.from_bytes(raw)
    except Exception as e:
        raise MalformedTransactionError(f"Could not deserialize transaction: {e}") from e

    signatures = tx.signatures
    if not signatures or signatures[0] == Signature.default():
        raise MalformedTransactionError("Transaction carries no signature")

    return DecodedTransaction(raw=raw, transaction=tx, signature=str(signatures[0]))


def parse_transfer_data(data):
    """Return the amount of an SPL Token Transfer instruction's data, or None."""
    data = bytes(data)
    if not data or data[0] != TRANSFER_TAG:
        return None
    if len(data) < TRANSFER_DATA_LEN:
        raise TransferInstructionError(
            f"Transfer instruction data truncated ({len(data)} bytes)"
        )
    return struct.unpack_from("<Q", data, 1)[0]


def find_transfer_instruction(transaction, token_program_id=TOKEN_PROGRAM_ID):
    """
    Locate the single SPL Token Transfer instruction in a transaction.

    Account order for Transfer is source, destination, authority. Raises
    ``TransferInstructionError`` when there is no such instruction or more
    than one.
    """
    message = transaction.message
    keys = message.account_keys
    program = Pubkey.from_string(token_program_id)

    if not message.instructions:
        raise TransferInstructionError("No instructions in transaction")

    found = []
    for ix in message.instructions:
        if ix.program_id_index >= len(keys) or keys[ix.program_id_index] != program:
            continue
        amount = parse_transfer_data(ix.data)
        if amount is None:
            continue
        accounts = list(ix.accounts)
        if len(accounts) < 2:
            raise TransferInstructionError("Transfer instruction is missing accounts")
        found.append(TransferInstruction(
            amount=amount,
            source=str(keys[accounts[0]]),
            destination=str(keys[accounts[1]]),
            authority=str(keys[accounts[2]]) if len(accounts) > 2 else None,
        ))

    if not found:
        raise TransferInstructionError("No SPL token transfer instruction found")
    if len(found) > 1:
        raise TransferInstructionError(
            f"Expected exactly one SPL token transfer instruction, found {len(found)}"
        )
    return found[0]
