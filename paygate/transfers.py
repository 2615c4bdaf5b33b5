"""
Token balance reconciliation for fetched transactions.

Transfers are reconstructed from ``meta.preTokenBalances`` and
``meta.postTokenBalances`` of a ``getTransaction`` result: any token account
whose raw balance increased received the delta.
"""

import enum
from dataclasses import dataclass

from paygate.config import TOKEN_PROGRAM_ID


class RecipientMatch(enum.Enum):
    OWNER = "owner"                  # recipient is the wallet owning the token account
    TOKEN_ACCOUNT = "token_account"  # recipient is the token account address itself


@dataclass(frozen=True)
class BalanceTransfer:
    account_index: int
    account: str
    owner: str
    mint: str
    amount: int
    inferred: bool = False


def resolve_account_keys(tx_details):
    """Account keys in index order, including v0 lookup-table addresses."""
    message = (tx_details.get("transaction") or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        keys.append(key.get("pubkey") if isinstance(key, dict) else key)
    loaded = (tx_details.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


def _raw_amount(entry):
    ui = entry.get("uiTokenAmount") or {}
    try:
        return int(ui.get("amount") or 0)
    except (TypeError, ValueError):
        return 0


def parse_token_transfers(tx_details):
    """Diff pre/post token balances per account index; returns positive deltas."""
    meta = tx_details.get("meta") or {}
    pre_balances = meta.get("preTokenBalances")
    post_balances = meta.get("postTokenBalances")
    if pre_balances is None or post_balances is None:
        return []

    keys = resolve_account_keys(tx_details)
    accounts = {}

    for pre in pre_balances:
        accounts[pre["accountIndex"]] = {
            "pre": _raw_amount(pre),
            "post": 0,
            "owner": pre.get("owner"),
            "mint": pre.get("mint"),
        }

    for post in post_balances:
        existing = accounts.get(post["accountIndex"])
        if existing:
            existing["post"] = _raw_amount(post)
        else:
            accounts[post["accountIndex"]] = {
                "pre": 0,
                "post": _raw_amount(post),
                "owner": post.get("owner"),
                "mint": post.get("mint"),
            }

    transfers = []
    for index, acct in accounts.items():
        diff = acct["post"] - acct["pre"]
        if diff > 0:
            transfers.append(BalanceTransfer(
                account_index=index,
                account=keys[index] if index < len(keys) else None,
                owner=acct["owner"],
                mint=acct["mint"],
                amount=diff,
            ))
    return transfers


def logs_confirm_transfer(tx_details):
    """True when the log messages show a token Transfer that completed."""
    logs = (tx_details.get("meta") or {}).get("logMessages") or []
    saw_transfer = any("Instruction: Transfer" in line for line in logs)
    token_success = any(
        line.startswith(f"Program {TOKEN_PROGRAM_ID} success") for line in logs
    )
    return saw_transfer and token_success


def infer_logged_transfer(tx_details, recipient, mint, amount):
    """
    Fallback for a successful transaction that shows no balance increase.

    When the logs confirm a Transfer and the recipient holds a post-balance in
    the expected mint, the transfer is assumed to have carried ``amount``.
    """
    meta = tx_details.get("meta") or {}
    if meta.get("err") is not None or not logs_confirm_transfer(tx_details):
        return None
    keys = resolve_account_keys(tx_details)
    for post in meta.get("postTokenBalances") or []:
        if post.get("owner") == recipient and post.get("mint") == mint:
            index = post["accountIndex"]
            return BalanceTransfer(
                account_index=index,
                account=keys[index] if index < len(keys) else None,
                owner=post.get("owner"),
                mint=post.get("mint"),
                amount=amount,
                inferred=True,
            )
    return None


def select_transfer(transfers, recipient, mint, match=RecipientMatch.OWNER):
    for transfer in transfers:
        if transfer.mint != mint:
            continue
        target = transfer.owner if match is RecipientMatch.OWNER else transfer.account
        if target == recipient:
            return transfer
    return None
