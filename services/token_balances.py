"""
Token Balance Store

Balances are keyed by (user, game, location) and only ever move through:
- credit_tokens(): additive upsert inside the crediting transaction
- adjust_balance(): administrative delta, clamped at zero
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Game, PaymentRecord, PaymentStatus, TokenBalance
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now, isoformat_utc

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def credit_tokens(session: Session, user_id: str, game_id: int, location: str, tokens: int) -> None:
    """
    Add `tokens` to the balance row, creating it at zero first if absent.

    Uses INSERT ... ON CONFLICT DO UPDATE where the dialect supports it; otherwise an
    UPDATE with an INSERT fallback retried as UPDATE when a concurrent insert wins.
    """
    if tokens <= 0:
        raise ValueError(f"credit amount must be positive, got {tokens}")

    now = get_naive_utc_now()
    insert_fn = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
    if insert_fn is not None:
        stmt = insert_fn(TokenBalance).values(
            user_id=user_id, game_id=game_id, location=location, tokens=tokens, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "game_id", "location"],
            set_={"tokens": TokenBalance.tokens + tokens, "updated_at": now},
        )
        session.execute(stmt)
        return

    if _increment_existing(session, user_id, game_id, location, tokens, now):
        return
    try:
        with session.begin_nested():
            session.add(TokenBalance(user_id=user_id, game_id=game_id, location=location, tokens=tokens))
    except IntegrityError:
        logger.debug(f"Balance row race for {user_id}/{game_id}/{location}; retrying as update")
        if not _increment_existing(session, user_id, game_id, location, tokens, now):
            raise


def _increment_existing(session: Session, user_id: str, game_id: int, location: str, tokens: int, now) -> bool:
    result = session.execute(
        update(TokenBalance)
        .where(
            TokenBalance.user_id == user_id,
            TokenBalance.game_id == game_id,
            TokenBalance.location == location,
        )
        .values(tokens=TokenBalance.tokens + tokens, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_balance(session: Session, user_id: str, game_id: int, location: str) -> int:
    value = (
        session.query(TokenBalance.tokens)
        .filter(
            TokenBalance.user_id == user_id,
            TokenBalance.game_id == game_id,
            TokenBalance.location == location,
        )
        .scalar()
    )
    return value or 0


def adjust_balance(
    user_id: str,
    game_id: int,
    location: str,
    delta: int,
    session_factory: Optional[Callable[[], Session]] = None,
) -> int:
    """Administrative adjustment; the balance never drops below zero. Returns the new balance."""
    with atomic_transaction(session_factory=session_factory or SessionLocal) as session:
        balance = (
            session.query(TokenBalance)
            .filter(
                TokenBalance.user_id == user_id,
                TokenBalance.game_id == game_id,
                TokenBalance.location == location,
            )
            .with_for_update()
            .first()
        )
        if balance is None:
            balance = TokenBalance(user_id=user_id, game_id=game_id, location=location, tokens=0)
            session.add(balance)

        previous = balance.tokens or 0
        balance.tokens = max(0, previous + delta)
        session.flush()
        new_tokens = balance.tokens

    if previous + delta < 0:
        logger.warning(
            f"⚠️ BALANCE_CLAMPED: user={user_id} game={game_id} location={location} "
            f"requested {delta} from {previous}; clamped to 0"
        )
    logger.info(f"🛠️ BALANCE_ADJUSTED: user={user_id} game={game_id} location={location} {previous} -> {new_tokens}")
    return new_tokens


def _pending_groups(session: Session, user_id: str) -> Dict[Tuple[int, str], Dict[str, Any]]:
    """Scheduled-but-uncredited tokens per (game, location)"""
    rows = (
        session.query(
            PaymentRecord.game_id,
            PaymentRecord.location,
            func.sum(PaymentRecord.token_quantity),
            func.min(PaymentRecord.tokens_scheduled_for),
        )
        .filter(
            PaymentRecord.user_id == user_id,
            PaymentRecord.status == PaymentStatus.SUCCEEDED.value,
            PaymentRecord.tokens_added.is_(False),
            PaymentRecord.tokens_scheduled_for.isnot(None),
        )
        .group_by(PaymentRecord.game_id, PaymentRecord.location)
        .all()
    )
    return {
        (game_id, location): {"pending_tokens": int(total or 0), "tokens_scheduled_for": earliest}
        for game_id, location, total, earliest in rows
    }


def get_token_balances(user_id: str, session_factory: Optional[Callable[[], Session]] = None) -> Dict[str, List[Dict[str, Any]]]:
    """
    Balance snapshot for a user.

    Every balance row carries `pending_tokens` (scheduled, not yet credited) and the
    earliest `tokens_scheduled_for`. Pending groups with no balance row yet are listed
    separately under `pending`.
    """
    with atomic_transaction(session_factory=session_factory or SessionLocal) as session:
        pending = _pending_groups(session, user_id)
        game_names = dict(session.query(Game.id, Game.name).all())
        balances = (
            session.query(TokenBalance)
            .filter(TokenBalance.user_id == user_id)
            .order_by(TokenBalance.game_id, TokenBalance.location)
            .all()
        )

        result: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for balance in balances:
            group = pending.pop((balance.game_id, balance.location), None) or {}
            result["balances"].append({
                "game_id": balance.game_id,
                "game_name": game_names.get(balance.game_id),
                "location": balance.location,
                "tokens": balance.tokens,
                "pending_tokens": group.get("pending_tokens", 0),
                "tokens_scheduled_for": isoformat_utc(group.get("tokens_scheduled_for")),
                "updated_at": isoformat_utc(balance.updated_at),
            })

        for (game_id, location), group in sorted(pending.items(), key=lambda item: (item[0][0], item[0][1])):
            result["pending"].append({
                "game_id": game_id,
                "game_name": game_names.get(game_id),
                "location": location,
                "tokens": 0,
                "pending_tokens": group["pending_tokens"],
                "tokens_scheduled_for": isoformat_utc(group["tokens_scheduled_for"]),
            })

    return {"balances": result["balances"], "pending": result["pending"]}
