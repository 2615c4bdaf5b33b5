"""
x402 payment verification.

``PaymentVerifier.verify`` takes a client-signed, base64-encoded SPL token
transfer, submits it to the network, reconciles the resulting token balances
and records one payment per transaction signature:

    decode -> replay check -> static instruction check -> (simulate)
    -> submit -> confirm -> balance reconciliation -> upsert

Every rejection comes back as a ``VerificationResult`` carrying a
``FailureReason``; only persistence errors propagate to the caller.
"""

import enum
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass

from paygate.accounts import reward_pool_vault
from paygate.models import Network, PaymentStatus, utcnow
from paygate.rpc import SolanaRpcError
from paygate.transaction import (
    MalformedTransactionError,
    TransferInstructionError,
    decode_transaction,
    find_transfer_instruction,
)
from paygate.transfers import (
    RecipientMatch,
    infer_logged_transfer,
    parse_token_transfers,
    select_transfer,
)

logger = logging.getLogger(__name__)


class FailureReason(str, enum.Enum):
    MALFORMED_TRANSACTION = "MalformedTransaction"
    PREVIOUSLY_FAILED = "PreviouslyFailed"
    NO_TRANSFER_INSTRUCTION = "NoTransferInstruction"
    INSUFFICIENT_AMOUNT = "InsufficientAmount"
    SIMULATION_FAILED = "SimulationFailed"
    SUBMISSION_FAILED = "SubmissionFailed"
    CONFIRMATION_FAILED = "ConfirmationFailed"
    NO_MATCHING_TRANSFER = "NoMatchingTransfer"
    TRANSACTION_NOT_FOUND = "TransactionNotFound"


class PaymentRejected(Exception):
    def __init__(self, reason, detail=None):
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail or reason.value


@dataclass
class VerificationResult:
    accepted: bool
    record: object = None
    failure_reason: FailureReason = None
    detail: str = None
    replayed: bool = False

    def to_dict(self):
        body = {"accepted": self.accepted}
        if self.record is not None:
            body["payment"] = self.record.to_dict()
        if self.failure_reason is not None:
            body["failure_reason"] = self.failure_reason.value
        if self.detail:
            body["detail"] = self.detail
        if self.replayed:
            body["replayed"] = True
        return body


class SignatureLocks:
    """Per-key mutexes; entries are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


@dataclass(frozen=True)
class OnChainTransfer:
    amount: int
    block_time: int = None
    slot: int = None
    inferred: bool = False


class PaymentVerifier:
    def __init__(self, rpc, repository, recipient, token_mint, required_amount, network,
                 recipient_match=RecipientMatch.OWNER, simulate_before_submit=True,
                 confirm_timeout=60.0, confirm_poll_interval=1.0, description=None):
        if not recipient:
            raise ValueError("A payment recipient is required")
        if not token_mint:
            raise ValueError("A token mint is required")
        self.rpc = rpc
        self.repository = repository
        self.recipient = recipient
        self.token_mint = token_mint
        self.required_amount = int(required_amount)
        self.network = Network(network)
        self.recipient_match = recipient_match
        self.simulate_before_submit = simulate_before_submit
        self.confirm_timeout = confirm_timeout
        self.confirm_poll_interval = confirm_poll_interval
        self.description = description
        self._locks = SignatureLocks()

    @classmethod
    def for_payment_wallet(cls, config, rpc, repository):
        """Payments to a wallet owner's token account, simulated before submission."""
        if not config.payment_wallet:
            raise ValueError("X402_PAYMENT_WALLET is not configured")
        return cls(
            rpc, repository,
            recipient=config.payment_wallet,
            token_mint=config.token_mint,
            required_amount=config.required_amount,
            network=config.network,
            recipient_match=RecipientMatch.OWNER,
            simulate_before_submit=True,
            confirm_timeout=config.confirm_timeout,
            confirm_poll_interval=config.confirm_poll_interval,
        )

    @classmethod
    def for_reward_pool(cls, config, rpc, repository):
        """Payments straight into the reward pool vault (ATA of the pool PDA)."""
        vault = reward_pool_vault(config.reward_pool_program_id, config.token_mint)
        logger.info("Reward pool vault: %s", vault)
        return cls(
            rpc, repository,
            recipient=vault,
            token_mint=config.token_mint,
            required_amount=config.required_amount,
            network=config.network,
            recipient_match=RecipientMatch.TOKEN_ACCOUNT,
            simulate_before_submit=False,
            confirm_timeout=config.confirm_timeout,
            confirm_poll_interval=config.confirm_poll_interval,
            description="Payment for API access - revenue goes to the reward pool",
        )

    @classmethod
    def from_config(cls, config, rpc, repository):
        if config.mode == "reward_pool":
            return cls.for_reward_pool(config, rpc, repository)
        return cls.for_payment_wallet(config, rpc, repository)

    def payment_requirements(self):
        requirements = {
            "recipient": self.recipient,
            "amount": self.required_amount,
            "token": self.token_mint,
            "network": f"solana-{self.network.value}",
        }
        if self.description:
            requirements["description"] = self.description
        return requirements

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def verify(self, encoded_transaction, endpoint, requester_id=None):
        try:
            decoded = decode_transaction(encoded_transaction)
        except MalformedTransactionError as e:
            return self._reject(FailureReason.MALFORMED_TRANSACTION, str(e))

        with self._locks.hold(decoded.signature):
            try:
                return self._verify_decoded(decoded, endpoint, requester_id)
            except PaymentRejected as e:
                return self._reject(e.reason, e.detail, decoded.signature)

    def _verify_decoded(self, decoded, endpoint, requester_id):
        signature = decoded.signature

        existing = self.repository.find_by_signature(signature)
        if existing is not None:
            if existing.status is PaymentStatus.CONFIRMED:
                logger.info("Payment %s already confirmed, replaying", signature[:16])
                return VerificationResult(
                    accepted=True, record=existing,
                    detail="Payment already confirmed", replayed=True,
                )
            if existing.status is PaymentStatus.FAILED:
                raise PaymentRejected(
                    FailureReason.PREVIOUSLY_FAILED,
                    "Transaction previously failed verification",
                )

        transfer = self._validate_instructions(decoded.transaction)

        if self.simulate_before_submit:
            self._simulate(decoded.raw)

        submitted = self._submit(decoded)
        landed = self._confirm(submitted, signature, transfer, endpoint, requester_id)
        if landed is not None:
            return VerificationResult(
                accepted=True, record=landed,
                detail="Payment already confirmed", replayed=True,
            )
        on_chain = self._verify_on_chain(submitted)

        record = self.repository.upsert_by_signature(
            signature,
            amount=on_chain.amount,
            token_mint=self.token_mint,
            sender=transfer.source,
            recipient=self.recipient,
            endpoint=endpoint,
            status=PaymentStatus.CONFIRMED,
            network=self.network,
            requester_id=requester_id,
            block_time=on_chain.block_time,
            slot=on_chain.slot,
            verified_at=utcnow(),
        )
        if record.status is not PaymentStatus.CONFIRMED:
            # A concurrent writer recorded a failure first
            raise PaymentRejected(
                FailureReason.PREVIOUSLY_FAILED,
                "Transaction previously failed verification",
            )

        logger.info(
            "Payment %s confirmed: %d of %s to %s (slot %s)",
            signature[:16], on_chain.amount, self.token_mint, self.recipient, on_chain.slot,
        )
        return VerificationResult(accepted=True, record=record, detail="Payment verified and confirmed")

    def _validate_instructions(self, transaction):
        try:
            transfer = find_transfer_instruction(transaction)
        except TransferInstructionError as e:
            raise PaymentRejected(FailureReason.NO_TRANSFER_INSTRUCTION, str(e)) from e

        if transfer.amount < self.required_amount:
            raise PaymentRejected(
                FailureReason.INSUFFICIENT_AMOUNT,
                f"Insufficient payment amount. Required: {self.required_amount}, "
                f"Received: {transfer.amount}",
            )
        return transfer

    def _simulate(self, raw):
        try:
            value = self.rpc.simulate_transaction(raw)
        except SolanaRpcError as e:
            raise PaymentRejected(FailureReason.SIMULATION_FAILED, f"Simulation error: {e.message}") from e

        err = value.get("err")
        if err is None:
            return
        if err == "AlreadyProcessed":
            # Landed earlier; submission will take the already-processed path
            logger.info("Simulation reports transaction already processed")
            return
        raise PaymentRejected(
            FailureReason.SIMULATION_FAILED,
            f"Transaction simulation failed: {json.dumps(err)}",
        )

    def _submit(self, decoded):
        try:
            submitted = self.rpc.send_transaction(decoded.raw)
        except SolanaRpcError as e:
            if e.already_processed:
                logger.info("Transaction %s already processed, using its signature", decoded.signature[:16])
                return decoded.signature
            raise PaymentRejected(
                FailureReason.SUBMISSION_FAILED,
                f"Transaction submission failed: {e.message}",
            ) from e

        if submitted and submitted != decoded.signature:
            logger.warning("Node returned signature %s for %s", submitted[:16], decoded.signature[:16])
        return submitted or decoded.signature

    def _confirm(self, submitted, signature, transfer, endpoint, requester_id):
        try:
            status = self.rpc.confirm_transaction(
                submitted,
                timeout=self.confirm_timeout,
                poll_interval=self.confirm_poll_interval,
            )
            error = status.get("err")
            if error is not None:
                error = f"Transaction failed: {json.dumps(error)}"
        except SolanaRpcError as e:
            error = f"Confirmation error: {e.message}"

        if error is None:
            return None

        record = self.repository.upsert_by_signature(
            signature,
            amount=transfer.amount,
            token_mint=self.token_mint,
            sender=transfer.source,
            recipient=self.recipient,
            endpoint=endpoint,
            status=PaymentStatus.FAILED,
            network=self.network,
            requester_id=requester_id,
        )
        if record.status is PaymentStatus.CONFIRMED:
            # Another writer confirmed this signature first
            logger.info("Payment %s confirmed elsewhere, replaying", signature[:16])
            return record
        raise PaymentRejected(FailureReason.CONFIRMATION_FAILED, error)

    def _verify_on_chain(self, submitted):
        try:
            details = self.rpc.get_transaction(submitted)
        except SolanaRpcError as e:
            raise PaymentRejected(
                FailureReason.TRANSACTION_NOT_FOUND,
                f"Could not fetch transaction: {e.message}",
            ) from e
        if not details:
            raise PaymentRejected(FailureReason.TRANSACTION_NOT_FOUND, "Transaction not found on chain")

        try:
            transfers = parse_token_transfers(details)
        except (KeyError, TypeError, ValueError) as e:
            raise PaymentRejected(
                FailureReason.NO_MATCHING_TRANSFER,
                f"Could not read token balances: {e}",
            ) from e

        match = select_transfer(transfers, self.recipient, self.token_mint, self.recipient_match)
        if match is None and not transfers and self.recipient_match is RecipientMatch.OWNER:
            match = infer_logged_transfer(details, self.recipient, self.token_mint, self.required_amount)
            if match is not None:
                logger.info("No balance change recorded; logs confirm transfer to %s", self.recipient)

        if match is None:
            logger.debug("Transfers found: %s", transfers)
            raise PaymentRejected(
                FailureReason.NO_MATCHING_TRANSFER,
                f"No matching token transfer to {self.recipient} for mint {self.token_mint}",
            )
        if match.amount < self.required_amount:
            raise PaymentRejected(
                FailureReason.INSUFFICIENT_AMOUNT,
                f"Insufficient amount transferred. Required: {self.required_amount}, "
                f"Got: {match.amount}",
            )
        return OnChainTransfer(
            amount=match.amount,
            block_time=details.get("blockTime"),
            slot=details.get("slot"),
            inferred=match.inferred,
        )

    def _reject(self, reason, detail, signature=None):
        logger.warning(
            "Payment %s rejected: %s (%s)",
            signature[:16] if signature else "<undecoded>", reason.value, detail,
        )
        return VerificationResult(accepted=False, failure_reason=reason, detail=detail)
