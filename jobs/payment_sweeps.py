"""
Payment sweeps

1. Status reconciliation: re-read the provider for every created/processing record and
   feed the report through the engine exactly as a webhook would. Catches dropped or
   unconfigured webhooks.
2. Scheduled release: credit succeeded records whose release time has arrived, plus any
   succeeded record whose crediting step failed earlier.

Each record is processed independently: a failure is logged and the sweep moves on.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple

from config import Config
from services import payment_records
from services.payment_gateway import ProviderUnavailableError
from services.payment_state import TransitionOutcome
from services.time_restrictions import CLOSING_WINDOWS, LocationCategory
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import ensure_naive_datetime

logger = logging.getLogger(__name__)


def _load_non_terminal(session_factory, limit: int) -> List[Tuple[str, str]]:
    with session_factory() as session:
        return payment_records.list_non_terminal_refs(session, limit)


def _load_release_candidates(session_factory, now, limit: int, category: Optional[LocationCategory]) -> List[str]:
    with session_factory() as session:
        refs = payment_records.list_due_for_release(session, now, limit, category)
        if category is None:
            refs += [
                ref for ref in payment_records.list_uncredited_unscheduled(session, limit)
                if ref not in refs
            ]
        return refs


async def run_status_reconciliation(engine, batch_size: Optional[int] = None) -> Dict[str, int]:
    """One pass of the status reconciliation sweep"""
    stats = Counter()
    refs = await run_io_task(_load_non_terminal, engine.session_factory, batch_size or Config.SWEEP_BATCH_SIZE)
    if not refs:
        logger.debug("🔍 STATUS_SWEEP: no pending payments")
        return dict(stats)

    for external_ref, provider in refs:
        stats["examined"] += 1
        try:
            result = await engine.reconcile_payment(external_ref, provider)
        except ProviderUnavailableError as e:
            stats["provider_unavailable"] += 1
            logger.warning(f"⏳ SWEEP_PROVIDER_UNAVAILABLE: {external_ref}: {e.message}; retrying next cycle")
            continue
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"❌ SWEEP_ITEM_FAILED: status reconciliation of {external_ref}: {e}", exc_info=True)
            continue

        if result.outcome is TransitionOutcome.APPLIED:
            stats["updated"] += 1
        if result.credited:
            stats["credited"] += 1
        if result.scheduled_for is not None:
            stats["scheduled"] += 1

    logger.info(f"🔍 STATUS_SWEEP_COMPLETE: {dict(stats)}")
    return dict(stats)


async def run_scheduled_release(
    engine,
    category: Optional[LocationCategory] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, int]:
    """One pass of the scheduled-release sweep, optionally for a single location category"""
    stats = Counter()
    now = ensure_naive_datetime(engine.now())
    refs = await run_io_task(
        _load_release_candidates, engine.session_factory, now, batch_size or Config.SWEEP_BATCH_SIZE, category
    )
    label = category.value if category else "all"
    if not refs:
        logger.debug(f"⏰ RELEASE_SWEEP[{label}]: nothing due")
        return dict(stats)

    for external_ref in refs:
        stats["examined"] += 1
        try:
            result = await engine.release_scheduled_tokens(external_ref, trigger=f"release:{label}")
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"❌ SWEEP_ITEM_FAILED: release of {external_ref}: {e}", exc_info=True)
            continue
        if result.credited:
            stats["credited"] += 1
        elif result.scheduled_for is not None:
            stats["scheduled"] += 1

    logger.info(f"⏰ RELEASE_SWEEP_COMPLETE[{label}]: {dict(stats)}")
    return dict(stats)


async def process_scheduled_tokens_for_location(engine, category: LocationCategory) -> int:
    """Release everything due for one location category; returns the number credited"""
    window = CLOSING_WINDOWS[category]
    logger.info(f"🏪 LOCATION_RELEASE: processing scheduled tokens for {window.display_name}")
    stats = await run_scheduled_release(engine, category=category)
    return stats.get("credited", 0)
