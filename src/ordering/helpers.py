from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Union

from .errors import EmptyOrder, InsufficientStock, InvalidOrderLine, InvalidQuantity, ProductNotFound


@dataclass(frozen=True)
class PlanLine:
    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    version: int


@dataclass(frozen=True)
class OrderPlan:
    total: Decimal
    lines: List[PlanLine] = field(default_factory=list)

    @property
    def product_ids(self) -> List[int]:
        return [line.product_id for line in self.lines]


def _as_int(value: Any, product_id: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuantity(product_id, value)
    return value


def _line_pair(line: Any):
    if not isinstance(line, Mapping):
        raise InvalidOrderLine(f"order line must be a mapping, got {line!r}")
    try:
        return line["product_id"], line["quantity"]
    except KeyError as e:
        raise InvalidOrderLine(f"order line is missing {e.args[0]!r}") from e


def normalize_items(items: Union[Iterable[Mapping[str, Any]], Mapping[int, int], None]) -> Dict[int, int]:
    """
    Merge order lines into {product_id: quantity}.

    Accepts [{"product_id": int, "quantity": int}, ...] or an already
    normalized mapping, so normalizing twice gives the same result.
    """
    if items is None:
        raise EmptyOrder()

    if isinstance(items, Mapping):
        pairs = list(items.items())
    else:
        pairs = [_line_pair(it) for it in items]

    qty_by_id: Dict[int, int] = {}
    for pid, qty in pairs:
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise InvalidOrderLine(f"product_id must be an integer, got {pid!r}")
        qty = _as_int(qty, pid)
        if qty <= 0:
            raise InvalidQuantity(pid, qty)
        qty_by_id[pid] = qty_by_id.get(pid, 0) + qty

    # also catches exhausted iterators, which are truthy
    if not qty_by_id:
        raise EmptyOrder()
    return qty_by_id


def price_order(normalized: Mapping[int, int], by_id: Mapping[int, Mapping[str, Any]]) -> OrderPlan:
    """Validate merged demand against a product snapshot and price it."""
    total = Decimal("0")
    lines: List[PlanLine] = []
    # Ascending id keeps row lock order stable across concurrent placements.
    for pid in sorted(normalized):
        qty = normalized[pid]
        row = by_id.get(pid)
        if row is None:
            raise ProductNotFound(pid)
        available = row["stock_quantity"]
        if available < qty:
            raise InsufficientStock(pid, qty, available)

        unit = Decimal(row["unit_price"])
        line_total = unit * qty
        total += line_total
        lines.append(PlanLine(pid, qty, unit, line_total, row["version"]))
    return OrderPlan(total=total, lines=lines)


def resolve_item_skus(store, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace {"sku": ...} references with product ids using one lookup."""
    skus = {it["sku"] for it in items if it.get("product_id") is None and it.get("sku") is not None}
    if not skus:
        return items

    id_by_sku = store.resolve_skus(skus)
    resolved: List[Dict[str, Any]] = []
    for it in items:
        if it.get("product_id") is None:
            sku = it.get("sku")
            if sku not in id_by_sku:
                raise ProductNotFound(sku)
            it = {"product_id": id_by_sku[sku], "quantity": it["quantity"]}
        resolved.append({"product_id": it["product_id"], "quantity": it["quantity"]})
    return resolved
