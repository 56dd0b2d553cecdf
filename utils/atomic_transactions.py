"""Atomic transaction utilities for payment reconciliation and token crediting"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, OperationalError

from database import SessionLocal
from models import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    With no session, a new one is opened from `session_factory` (default SessionLocal),
    committed on success and rolled back on error. A provided session is reused and
    only the outermost block commits.
    """
    if session is None:
        session = (session_factory or SessionLocal)()
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
    try:
        yield session
        if transaction_depth == 0:
            session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


@contextmanager
def payment_confirmation_transaction(
    operation_type: str,
    reference_id: str,
    payment_source: str = "unknown",
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Transaction wrapper for one reconciliation step on one payment record.

    Args:
        operation_type: What is being applied (confirm, webhook, sweep, release, ...)
        reference_id: External reference of the payment record
        payment_source: Provider name
    """
    start_time = time.time()
    try:
        with atomic_transaction(session_factory=session_factory) as session:
            logger.debug(
                f"🔄 PAYMENT_TX_START: {operation_type} | Reference: {reference_id} | Source: {payment_source}"
            )
            yield session
        logger.debug(
            f"✅ PAYMENT_TX_SUCCESS: {operation_type} | Reference: {reference_id} | "
            f"Duration: {time.time() - start_time:.3f}s"
        )
    except Exception as e:
        logger.error(
            f"❌ PAYMENT_TX_FAILED: {operation_type} | Reference: {reference_id} | Source: {payment_source} | "
            f"Duration: {time.time() - start_time:.3f}s | Error: {e}"
        )
        raise


def lock_payment_record(
    session: Session, external_ref: str, max_retries: int = 3
) -> Optional[PaymentRecord]:
    """
    Load a payment record with a row-level lock (SELECT ... FOR UPDATE).

    Deadlock/lock-timeout errors are retried with exponential backoff. Returns None when
    no record carries the reference. SQLite ignores FOR UPDATE; there the caller's
    transaction is the only guard.
    """
    retry_count = 0
    while True:
        try:
            record = (
                session.query(PaymentRecord)
                .filter(PaymentRecord.external_ref == external_ref)
                .with_for_update(nowait=False)
                .populate_existing()
                .first()
            )
            if record is not None:
                logger.debug(f"🔒 Locked payment record {external_ref}")
            return record
        except OperationalError as e:
            message = str(e).lower()
            retry_count += 1
            if ("deadlock detected" in message or "lock_timeout" in message) and retry_count < max_retries:
                backoff_time = 0.1 * (2 ** retry_count)
                logger.warning(
                    f"Deadlock detected for payment {external_ref}, retrying ({retry_count}/{max_retries}) after {backoff_time}s"
                )
                session.rollback()
                time.sleep(backoff_time)
                continue
            logger.error(f"Database operational error locking payment {external_ref}: {e}")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error locking payment {external_ref}: {e}")
            raise


def claim_tokens_added(session: Session, record_id: int) -> bool:
    """
    Compare-and-set on the crediting guard.

    Flips tokens_added false -> true only while the persisted row is still uncredited and
    succeeded. Returns True for exactly one caller per record; every other caller sees 0
    affected rows and must not touch the balance.
    """
    result = session.execute(
        update(PaymentRecord)
        .where(
            PaymentRecord.id == record_id,
            PaymentRecord.tokens_added.is_(False),
            PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
        )
        .values(tokens_added=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


__all__ = [
    "atomic_transaction",
    "payment_confirmation_transaction",
    "lock_payment_record",
    "claim_tokens_added",
]
