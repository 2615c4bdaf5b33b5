"""
Solana JSON-RPC client.

Thin wrapper over ``requests`` covering the calls the payment pipeline makes:
submit, simulate, confirm (status polling) and fetch. Rate limits and
transient node errors are retried with a short backoff; every other failure
is raised as ``SolanaRpcError``.
"""

import base64
import logging
import time

import requests

logger = logging.getLogger(__name__)

# Node-side errors worth retrying: "block not available" / "node is behind"
RETRYABLE_RPC_CODES = (-32005, -32009)

ALREADY_PROCESSED_MARKERS = (
    "already processed",
    "already been processed",
)


class SolanaRpcError(Exception):
    """Raised when the RPC node rejects a call or cannot be reached."""

    def __init__(self, message, code=None, data=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    @property
    def already_processed(self):
        """True when the node reports the transaction has already landed."""
        text = self.message.lower()
        if any(marker in text for marker in ALREADY_PROCESSED_MARKERS):
            return True
        if isinstance(self.data, dict):
            err = self.data.get("err")
            if err == "AlreadyProcessed":
                return True
            logs = self.data.get("logs") or []
            return any(
                marker in (line or "").lower()
                for line in logs
                for marker in ALREADY_PROCESSED_MARKERS
            )
        return False


class ConfirmationTimeout(SolanaRpcError):
    pass


class SolanaRpcClient:
    def __init__(self, rpc_url, timeout=12, retries=2, commitment="confirmed", session=None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.retries = retries
        self.commitment = commitment
        self.session = session or requests.Session()

    def _rpc_call(self, method, params):
        """Make a JSON-RPC call with retry on rate limit; returns ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }
        for attempt in range(self.retries + 1):
            try:
                resp = self.session.post(
                    self.rpc_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout:
                if attempt < self.retries:
                    logger.debug("RPC %s timed out, retrying (attempt %d)", method, attempt + 1)
                    continue
                raise SolanaRpcError(f"RPC call {method} timed out") from None
            except requests.exceptions.RequestException as e:
                raise SolanaRpcError(f"RPC call {method} failed: {str(e)[:300]}") from e

            if resp.status_code == 429:
                if attempt < self.retries:
                    logger.debug("RPC %s rate limited, backing off", method)
                    time.sleep(0.8 * (attempt + 1))
                    continue
                raise SolanaRpcError("Solana RPC rate limit hit", code=429)
            if resp.status_code != 200:
                raise SolanaRpcError(
                    f"RPC call {method} returned HTTP {resp.status_code}: {resp.text[:500]}",
                    code=resp.status_code,
                )

            try:
                data = resp.json()
            except ValueError:
                raise SolanaRpcError(f"RPC call {method} returned invalid JSON") from None

            if "error" in data:
                err = data["error"]
                if isinstance(err, dict):
                    code = err.get("code", 0)
                    if code in RETRYABLE_RPC_CODES and attempt < self.retries:
                        time.sleep(0.5)
                        continue
                    raise SolanaRpcError(
                        err.get("message", "RPC error"), code=code, data=err.get("data")
                    )
                raise SolanaRpcError(str(err))
            return data.get("result")

    # ------------------------------------------------------------------
    # Calls used by the verifier
    # ------------------------------------------------------------------
    def send_transaction(self, raw_transaction):
        """sendTransaction: returns the base58 signature reported by the node."""
        encoded = base64.b64encode(raw_transaction).decode("ascii")
        return self._rpc_call("sendTransaction", [
            encoded,
            {"encoding": "base64", "skipPreflight": False,
             "preflightCommitment": self.commitment},
        ])

    def simulate_transaction(self, raw_transaction):
        """simulateTransaction: returns the ``value`` object (``err``, ``logs``...)."""
        encoded = base64.b64encode(raw_transaction).decode("ascii")
        result = self._rpc_call("simulateTransaction", [
            encoded,
            {"encoding": "base64", "commitment": self.commitment, "sigVerify": False},
        ])
        return (result or {}).get("value") or {}

    def get_signature_status(self, signature):
        result = self._rpc_call("getSignatureStatuses", [
            [signature],
            {"searchTransactionHistory": True},
        ])
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    def confirm_transaction(self, signature, timeout=60.0, poll_interval=1.0):
        """
        Poll the signature status until the configured commitment is reached.

        Returns the status object; callers inspect ``err`` for execution
        failures. Raises ``ConfirmationTimeout`` when nothing lands in time.
        """
        wanted = ("confirmed", "finalized") if self.commitment == "confirmed" else ("finalized",)
        deadline = time.monotonic() + timeout
        while True:
            status = self.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    return status
                if status.get("confirmationStatus") in wanted:
                    return status
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(
                    f"Transaction {signature} was not confirmed within {timeout:g}s"
                )
            time.sleep(poll_interval)

    def get_transaction(self, signature):
        """getTransaction with json encoding; ``None`` when the node has no record."""
        return self._rpc_call("getTransaction", [
            signature,
            {"encoding": "json", "commitment": self.commitment,
             "maxSupportedTransactionVersion": 0},
        ])
