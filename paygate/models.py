import enum
from datetime import datetime, timedelta, timezone

from sqlalchemy import BigInteger, Column, DateTime, Enum, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

PENDING_TTL = timedelta(minutes=5)


def utcnow():
    return datetime.now(timezone.utc)


def _as_utc(value):
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Network(enum.Enum):
    MAINNET = "mainnet"
    DEVNET = "devnet"
    TESTNET = "testnet"


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signature = Column(String(128), unique=True, index=True, nullable=False)
    amount = Column(BigInteger, nullable=False)
    token_mint = Column(String(64), nullable=False)
    sender = Column(String(64), nullable=False)
    recipient = Column(String(64), nullable=False)
    endpoint = Column(String(512), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    network = Column(Enum(Network), nullable=False)
    requester_id = Column(String(128), nullable=True)
    x402_version = Column(Integer, default=1, nullable=False)
    block_time = Column(BigInteger, nullable=True)
    slot = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payments_signature_status", "signature", "status"),
        Index("ix_payments_requester_created", "requester_id", "created_at"),
    )

    @property
    def is_terminal(self):
        return self.status in (PaymentStatus.CONFIRMED, PaymentStatus.FAILED)

    def is_expired(self, now=None, ttl=PENDING_TTL):
        """A pending record older than ``ttl`` is considered abandoned."""
        if self.status is not PaymentStatus.PENDING:
            return False
        now = now or utcnow()
        return _as_utc(self.created_at) < now - ttl

    def to_dict(self):
        def iso(value):
            return _as_utc(value).isoformat() if value else None

        return {
            "signature": self.signature,
            "amount": self.amount,
            "token_mint": self.token_mint,
            "sender": self.sender,
            "recipient": self.recipient,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "network": f"solana-{self.network.value}",
            "requester_id": self.requester_id,
            "x402_version": self.x402_version,
            "block_time": self.block_time,
            "slot": self.slot,
            "created_at": iso(self.created_at),
            "verified_at": iso(self.verified_at),
        }

    def __repr__(self):
        return f"<PaymentRecord(signature='{self.signature[:16]}...', status={self.status.value})>"
