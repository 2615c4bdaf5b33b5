"""
Payment persistence keyed by transaction signature.

The store behaves as a key-value map with a unique index on ``signature``.
``upsert_by_signature`` is the only write path; it never rewrites a record
that already reached a terminal status, so concurrent writers for the same
signature converge on the first terminal outcome.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paygate.models import Base, PaymentRecord

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100


def _engine_for(database_url):
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every session sees the same in-memory db
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class PaymentRepository:
    def __init__(self, database_url=None, engine=None):
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = _engine_for(database_url)
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def create_all(self):
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self):
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    def find_by_signature(self, signature):
        with self.session() as db:
            stmt = select(PaymentRecord).where(PaymentRecord.signature == signature)
            return db.execute(stmt).scalar_one_or_none()

    def upsert_by_signature(self, signature, **fields):
        """
        Insert or update the record for ``signature`` and return it.

        A terminal record (confirmed / failed) is returned untouched. A unique
        constraint violation means another writer inserted first; the write
        is retried once as an update against that row.
        """
        for attempt in range(2):
            with self.session() as db:
                try:
                    stmt = (
                        select(PaymentRecord)
                        .where(PaymentRecord.signature == signature)
                        .with_for_update()
                    )
                    record = db.execute(stmt).scalar_one_or_none()
                    if record is None:
                        record = PaymentRecord(signature=signature, **fields)
                        db.add(record)
                    elif record.is_terminal:
                        logger.info(
                            "Payment %s already %s; keeping existing record",
                            signature[:16], record.status.value,
                        )
                        return record
                    else:
                        for key, value in fields.items():
                            setattr(record, key, value)
                    db.commit()
                    return record
                except IntegrityError:
                    db.rollback()
                    if attempt:
                        raise
                    logger.debug("Concurrent insert for %s, retrying as update", signature[:16])

    def list_by_requester(self, requester_id, limit=20):
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        with self.session() as db:
            stmt = (
                select(PaymentRecord)
                .where(PaymentRecord.requester_id == requester_id)
                .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
                .limit(limit)
            )
            return list(db.execute(stmt).scalars().all())
