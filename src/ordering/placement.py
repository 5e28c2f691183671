"""
Order placement engine.

    normalize -> load snapshot -> validate/price -> commit -> (retry)

Normalization happens once per request. Each attempt re-reads the product
snapshot with a single bulk query, prices the merged demand in memory and
persists the order header, its lines and the stock deductions in one
transaction. Transient conflicts are retried from the snapshot read.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from . import config
from .errors import (
    Conflict,
    InsufficientStockAtCommit,
    PlacementCancelled,
    StaleVersion,
    StoreUnavailable,
    TransientError,
    Unavailable,
)
from .helpers import OrderPlan, normalize_items, price_order

logger = logging.getLogger(__name__)

CONCURRENCY_MODES = {
    # store-level conflict detection plus row locks on the touched products
    "serializable": "serializable",
    # conditional update on the version token
    "version": "read_committed",
}


class PlacementState(str, Enum):
    NORMALIZING = "NORMALIZING"
    LOADED = "LOADED"
    VALIDATED = "VALIDATED"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"
    FAILED = "FAILED"


def _enter(state: PlacementState, attempt: int, user_id: int) -> None:
    logger.debug("order placement state=%s attempt=%d user_id=%s", state.value, attempt, user_id)


def _check_cancelled(cancel_event) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PlacementCancelled()


def _revalidate(plan: OrderPlan, current: Mapping[int, Mapping[str, Any]]) -> None:
    """Compare rows read inside the transaction with the priced snapshot."""
    for line in plan.lines:
        row = current.get(line.product_id)
        if row is None:
            raise StaleVersion(line.product_id, line.version, None)
        if row["stock_quantity"] < line.quantity:
            raise InsufficientStockAtCommit(line.product_id, line.quantity, row["stock_quantity"])
        if row["version"] != line.version:
            raise StaleVersion(line.product_id, line.version, row["version"])


def commit_plan(
    store,
    user_id: int,
    plan: OrderPlan,
    mode: str = "serializable",
    cancel_event=None,
) -> Dict[str, Any]:
    """
    Persist a priced plan as one atomic unit.

    Order header, order lines and stock deductions are written in the same
    transaction; any exception rolls all of them back.
    """
    isolation = CONCURRENCY_MODES[mode]
    with store.transaction(isolation):
        if mode == "serializable":
            _revalidate(plan, store.lock_products(plan.product_ids))

        order = store.insert_order(user_id, plan.total)
        items = store.insert_order_items(order["id"], plan.lines)

        updated = store.decrement_stock(plan.lines)
        missed = [line for line in plan.lines if line.product_id not in updated]
        if missed:
            _revalidate(
                OrderPlan(total=plan.total, lines=missed),
                store.read_products([line.product_id for line in missed]),
            )
            # version tokens only grow, so a missed row always fails revalidation
            raise StaleVersion(missed[0].product_id, missed[0].version, None)

        _check_cancelled(cancel_event)

    order = dict(order)
    order["items"] = items
    return order


def place_order(
    store,
    user_id: int,
    items: Iterable[Mapping[str, Any]],
    mode: Optional[str] = None,
    max_attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    cancel_event=None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    items: [{ "product_id": int, "quantity": int}, ...]

    Returns the committed order (id, user_id, total_amount, created_at,
    items). Serialization conflicts and stale versions are retried up to
    max_attempts, then surfaced as Conflict. A store failure is retried
    only if it happened before COMMIT was sent, otherwise surfaced as
    Unavailable. Validation and stock failures are raised immediately.
    """
    mode = (mode or config.ORDER_CONCURRENCY_MODE).lower()
    if mode not in CONCURRENCY_MODES:
        raise ValueError(f"Unknown concurrency mode: {mode}")
    max_attempts = max_attempts or config.ORDER_MAX_ATTEMPTS
    backoff = config.ORDER_RETRY_BACKOFF if backoff is None else backoff

    _enter(PlacementState.NORMALIZING, 1, user_id)
    normalized = normalize_items(items)
    product_ids: List[int] = sorted(normalized)

    attempt = 0
    while True:
        attempt += 1
        try:
            _check_cancelled(cancel_event)
            snapshot = store.fetch_products(product_ids)
            _enter(PlacementState.LOADED, attempt, user_id)

            plan = price_order(normalized, snapshot)
            _enter(PlacementState.VALIDATED, attempt, user_id)

            _check_cancelled(cancel_event)
            _enter(PlacementState.COMMITTING, attempt, user_id)
            order = commit_plan(store, user_id, plan, mode=mode, cancel_event=cancel_event)
        except InsufficientStockAtCommit as e:
            _enter(PlacementState.FAILED, attempt, user_id)
            logger.warning(
                "Stock for product %s ran out before commit (requested=%s, available=%s)",
                e.product_id,
                e.requested,
                e.available,
            )
            raise
        except TransientError as e:
            _enter(PlacementState.ABORTED, attempt, user_id)
            if attempt >= max_attempts:
                _enter(PlacementState.FAILED, attempt, user_id)
                logger.warning("Giving up on order for user %s after %d attempts: %s", user_id, attempt, e)
                raise Conflict(attempt, e) from e
            logger.warning("Retrying order for user %s (attempt %d/%d): %s", user_id, attempt, max_attempts, e)
        except StoreUnavailable as e:
            _enter(PlacementState.ABORTED, attempt, user_id)
            if e.commit_sent or attempt >= max_attempts:
                _enter(PlacementState.FAILED, attempt, user_id)
                logger.error("Order store unavailable for user %s (commit_sent=%s): %s", user_id, e.commit_sent, e)
                raise Unavailable(e) from e
            logger.warning("Store unavailable, retrying order for user %s (attempt %d/%d): %s", user_id, attempt, max_attempts, e)
        else:
            _enter(PlacementState.COMMITTED, attempt, user_id)
            logger.info(
                "Placed order %s for user %s total=%s lines=%d attempts=%d",
                order["id"],
                user_id,
                order["total_amount"],
                len(order["items"]),
                attempt,
            )
            return order

        if backoff:
            sleep(backoff * attempt)
