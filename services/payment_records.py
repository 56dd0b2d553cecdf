"""Payment record queries and snapshots (sync; callers own the session/transaction)"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from models import PaymentRecord, PaymentStatus
from services.payment_state import PaymentStateValidator
from services.time_restrictions import CLOSING_WINDOWS, LocationCategory
from utils.datetime_helpers import isoformat_utc

logger = logging.getLogger(__name__)


def get_by_ref(session: Session, external_ref: str) -> Optional[PaymentRecord]:
    return (
        session.query(PaymentRecord)
        .options(joinedload(PaymentRecord.game))
        .filter(PaymentRecord.external_ref == external_ref)
        .first()
    )


def find_duplicate_candidate(
    session: Session,
    user_id: str,
    game_id: int,
    token_quantity: int,
    unit_price: Decimal,
    location: str,
    since: datetime,
) -> Optional[PaymentRecord]:
    """Newest non-terminal record for the same purchase created at or after `since`"""
    return (
        session.query(PaymentRecord)
        .filter(
            PaymentRecord.user_id == user_id,
            PaymentRecord.game_id == game_id,
            PaymentRecord.token_quantity == token_quantity,
            PaymentRecord.unit_price == unit_price,
            PaymentRecord.location == location,
            PaymentRecord.status.in_(PaymentStateValidator.NON_TERMINAL_STATUSES),
            PaymentRecord.created_at >= since,
        )
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .first()
    )


def list_non_terminal_refs(session: Session, limit: int) -> List[Tuple[str, str]]:
    """(external_ref, provider) awaiting a provider outcome, least recently reconciled first"""
    rows = (
        session.query(PaymentRecord.external_ref, PaymentRecord.provider)
        .filter(PaymentRecord.status.in_(PaymentStateValidator.NON_TERMINAL_STATUSES))
        .order_by(
            func.coalesce(PaymentRecord.last_reconciled_at, PaymentRecord.created_at).asc(),
            PaymentRecord.id.asc(),
        )
        .limit(limit)
        .all()
    )
    return [(ref, provider) for ref, provider in rows]


def _location_matches(category: LocationCategory):
    """SQL form of categorize_location: lower-cased, spaces and dashes removed, keyword match"""
    normalized = func.lower(func.replace(func.replace(PaymentRecord.location, " ", ""), "-", ""))
    return or_(*(normalized.like(f"%{keyword}%") for keyword in CLOSING_WINDOWS[category].keywords))


def list_due_for_release(
    session: Session,
    now: datetime,
    limit: int,
    category: Optional[LocationCategory] = None,
) -> List[str]:
    """Succeeded, uncredited records whose scheduled release time has arrived"""
    query = session.query(PaymentRecord.external_ref).filter(
        PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
        PaymentRecord.tokens_added.is_(False),
        PaymentRecord.tokens_scheduled_for.isnot(None),
        PaymentRecord.tokens_scheduled_for <= now,
    )
    if category is not None:
        query = query.filter(_location_matches(category))
    rows = query.order_by(PaymentRecord.tokens_scheduled_for.asc()).limit(limit).all()
    return [row[0] for row in rows]


def list_uncredited_unscheduled(session: Session, limit: int) -> List[str]:
    """Succeeded records that never reached a crediting decision (credit step failed after success)"""
    rows = (
        session.query(PaymentRecord.external_ref)
        .filter(
            PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
            PaymentRecord.tokens_added.is_(False),
            PaymentRecord.tokens_scheduled_for.is_(None),
        )
        .order_by(PaymentRecord.updated_at.asc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def list_for_user(session: Session, user_id: str, limit: int = 50) -> List[PaymentRecord]:
    return (
        session.query(PaymentRecord)
        .options(joinedload(PaymentRecord.game))
        .filter(PaymentRecord.user_id == user_id)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .limit(limit)
        .all()
    )


def merge_metadata(record: PaymentRecord, updates: Optional[Dict[str, Any]]) -> None:
    """Assign a new dict so the JSON column change is detected"""
    if not updates:
        return
    record.metadata_json = {**(record.metadata_json or {}), **updates}


FAILURE_KEYS = ("failure_reason", "error_code", "decline_code", "failed_at")


def archive_failure(record: PaymentRecord) -> None:
    """Move failure details under previous_failure once a record recovers from failed"""
    metadata = dict(record.metadata_json or {})
    previous = {key: metadata.pop(key) for key in FAILURE_KEYS if key in metadata}
    if previous:
        metadata["previous_failure"] = previous
        record.metadata_json = metadata


def snapshot(record: PaymentRecord) -> Dict[str, Any]:
    """Display snapshot of a payment record"""
    metadata = record.metadata_json or {}
    return {
        "id": record.id,
        "external_ref": record.external_ref,
        "provider": record.provider,
        "game_id": record.game_id,
        "game_name": metadata.get("game_name") or (record.game.name if record.game else None),
        "location": record.location,
        "tokens": record.token_quantity,
        "price": float(record.unit_price),
        "amount": float(record.amount),
        "currency": record.currency,
        "status": record.status,
        "display_status": PaymentStateValidator.display_status(record.status),
        "provider_status": record.provider_status,
        "payment_method": record.payment_method,
        "receipt_ref": record.receipt_ref,
        "tokens_added": record.tokens_added,
        "tokens_scheduled_for": isoformat_utc(record.tokens_scheduled_for),
        "tokens_credited_at": isoformat_utc(record.tokens_credited_at),
        "failure_reason": metadata.get("failure_reason"),
        "error_code": metadata.get("error_code"),
        "created_at": isoformat_utc(record.created_at),
        "updated_at": isoformat_utc(record.updated_at),
    }
