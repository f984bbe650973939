"""
Sale item reconciler.

Given the line items a sale should end up with (``desired``) and the ones it
has now (``original``), work out the row writes and stock deltas that move it
there, then apply them.

Items are matched by their persisted id:

    original            desired             plan
    --------            -------             ----
    id 1, A x2          id 1, A x5          update row 1, stock A -3
    id 2, B x1          (absent)            delete row 2, stock B +1
    (absent)            no id, C x1         insert row,   stock C -1

Unchanged items produce no writes at all, so applying the same edit twice
is a no-op the second time.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from retailpos.core.exceptions import SaleError, ValidationError
from retailpos.core.utils import to_money
from retailpos.inventory import ledger
from retailpos.inventory.models import StockMovement
from .models import SaleItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    """A line item as the reconciler sees it; ``id`` is None for new items"""
    product_id: int
    quantity: int
    unit_price: Decimal
    id: Optional[int] = None

    @property
    def total_price(self):
        return to_money(self.quantity * self.unit_price)

    @classmethod
    def from_model(cls, item):
        return cls(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price, id=item.id)

    def as_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'quantity': self.quantity,
            'unit_price': str(self.unit_price),
        }


@dataclass(frozen=True)
class ItemUpdate:
    original: LineItem
    desired: LineItem

    @property
    def stock_delta(self):
        """Positive when the quantity went down (stock goes back on the shelf)"""
        return self.original.quantity - self.desired.quantity


@dataclass
class ReconciliationPlan:
    to_delete: List[LineItem] = field(default_factory=list)
    to_update: List[ItemUpdate] = field(default_factory=list)
    to_insert: List[LineItem] = field(default_factory=list)

    @property
    def is_empty(self):
        return not (self.to_delete or self.to_update or self.to_insert)

    def stock_deltas(self):
        """Net signed stock change per product id, zero entries left out"""
        deltas = {}
        for item in self.to_delete:
            deltas[item.product_id] = deltas.get(item.product_id, 0) + item.quantity
        for update in self.to_update:
            product_id = update.original.product_id
            deltas[product_id] = deltas.get(product_id, 0) + update.stock_delta
        for item in self.to_insert:
            deltas[item.product_id] = deltas.get(item.product_id, 0) - item.quantity
        return {product_id: delta for product_id, delta in deltas.items() if delta}

    def summary(self):
        return {
            'deleted': [item.id for item in self.to_delete],
            'updated': [update.original.id for update in self.to_update],
            'inserted': len(self.to_insert),
            'stock_deltas': {str(k): v for k, v in self.stock_deltas().items()},
        }


def build_plan(desired, original):
    """Diff ``desired`` against ``original`` (both sequences of LineItem).

    An item that keeps its id but names a different product is replaced:
    the original row is deleted and a new one inserted.

    Raises:
        ValidationError: duplicate ids, or an id that is not one of ``original``
    """
    originals = {item.id: item for item in original}
    plan = ReconciliationPlan()
    matched = set()

    for item in desired:
        if item.id is None:
            plan.to_insert.append(item)
            continue
        if item.id in matched:
            raise ValidationError(f"Line item {item.id} appears more than once", item_id=item.id)
        current = originals.get(item.id)
        if current is None:
            raise ValidationError(f"Line item {item.id} does not belong to this sale", item_id=item.id)
        matched.add(item.id)

        if item.product_id != current.product_id:
            plan.to_delete.append(current)
            plan.to_insert.append(LineItem(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price))
        elif item.quantity != current.quantity or item.unit_price != current.unit_price:
            plan.to_update.append(ItemUpdate(original=current, desired=item))

    for item_id, item in originals.items():
        if item_id not in matched:
            plan.to_delete.append(item)

    return plan


class _StockWriter:
    """Applies stock deltas, either raising on the first failure or collecting them"""

    def __init__(self, sale, user=None, strict=True):
        self.sale = sale
        self.user = user
        self.strict = strict
        self.failures = []

    def apply(self, product_id, delta, reason, sale_item_id):
        if self.strict:
            ledger.apply_delta(product_id, delta, reason=reason, sale=self.sale, sale_item_id=sale_item_id, user=self.user)
            return
        try:
            ledger.apply_delta(product_id, delta, reason=reason, sale=self.sale, sale_item_id=sale_item_id, user=self.user)
        except SaleError as e:
            logger.error(f"Stock {delta:+d} for product {product_id} on sale {self.sale.invoice_number} failed: {e}")
            self.failures.append({
                'product_id': product_id,
                'sale_item_id': sale_item_id,
                'delta': delta,
                'reason': reason,
                'error': type(e).__name__,
                'message': e.message,
            })


def apply_plan(sale, plan, *, user=None, strict=True, creating=False):
    """Write ``plan`` for ``sale``: deletes, then updates, then inserts.

    Updates that return stock are written before those that take it.

    Under ``strict`` the first stock failure propagates (the caller's
    transaction rolls everything back). Otherwise stock failures are logged
    and returned as a list of dicts, and the row writes stand.
    """
    stock = _StockWriter(sale, user=user, strict=strict)

    if plan.to_delete:
        SaleItem.objects.filter(sale=sale, id__in=[item.id for item in plan.to_delete]).delete()
        for item in plan.to_delete:
            stock.apply(item.product_id, item.quantity, StockMovement.REASON_SALE_ITEM_REMOVED, item.id)

    for update in sorted(plan.to_update, key=lambda update: update.stock_delta, reverse=True):
        desired = update.desired
        SaleItem.objects.filter(sale=sale, id=update.original.id).update(
            quantity=desired.quantity,
            unit_price=desired.unit_price,
            total_price=desired.total_price,
        )
        stock.apply(update.original.product_id, update.stock_delta, StockMovement.REASON_SALE_ITEM_CHANGED, update.original.id)

    insert_reason = StockMovement.REASON_SALE if creating else StockMovement.REASON_SALE_ITEM_ADDED
    for item in plan.to_insert:
        row = SaleItem.objects.create(
            sale=sale,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.total_price,
        )
        stock.apply(item.product_id, -item.quantity, insert_reason, row.id)

    return stock.failures
