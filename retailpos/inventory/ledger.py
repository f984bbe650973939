"""
Stock ledger: the only code allowed to change Stock.quantity.

Every change is a single ``UPDATE stock SET quantity = quantity + delta``
issued by the database (an F() expression), never a read-then-write in
Python, so concurrent sales of the same product cannot lose updates.
Decrements are additionally guarded with ``quantity >= -delta`` so stock never
goes negative, even when two sales pass pre-validation at the same time.

Each applied delta is recorded as a StockMovement in the same savepoint.
"""
import logging

from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from retailpos.core import events
from retailpos.core.exceptions import InsufficientStockError, StorageError, ValidationError
from retailpos.core.utils import create_audit_log
from .models import Stock, StockMovement

logger = logging.getLogger(__name__)


def available_quantities(product_ids):
    """Return {product_id: on-hand quantity} for the products that have a stock row"""
    ids = set(product_ids)
    if not ids:
        return {}
    try:
        return dict(Stock.objects.filter(product_id__in=ids).values_list('product_id', 'quantity'))
    except DatabaseError as e:
        raise StorageError(f"Could not read stock levels: {e}") from e


def check_availability(deltas):
    """Validate that every negative delta in ``deltas`` can be covered.

    Args:
        deltas: {product_id: signed quantity change}

    Raises:
        InsufficientStockError listing every product that is short.
    """
    needed = {product_id: -delta for product_id, delta in deltas.items() if delta < 0}
    if not needed:
        return
    on_hand = available_quantities(needed)
    shortages = {}
    for product_id, requested in needed.items():
        available = on_hand.get(product_id, 0)
        if requested > available:
            shortages[product_id] = {'requested': requested, 'available': available}
    if shortages:
        raise InsufficientStockError(shortages)


def _raise_for_failed_update(product_id, delta):
    current = Stock.objects.filter(product_id=product_id).values_list('quantity', flat=True).first()
    if current is None:
        raise StorageError(f"No stock record for product {product_id}", product_id=product_id)
    raise InsufficientStockError({product_id: {'requested': -delta, 'available': current}})


def apply_delta(product_id, delta, *, reason, sale=None, sale_item_id=None, user=None, notes=''):
    """Atomically add ``delta`` (signed) to a product's stock.

    Returns the StockMovement written, or None for a zero delta.

    Raises:
        InsufficientStockError: a decrement would take stock below zero
        StorageError: the stock row is missing or the database failed
    """
    delta = int(delta)
    if delta == 0:
        return None

    try:
        with transaction.atomic():
            rows = Stock.objects.filter(product_id=product_id)
            if delta < 0:
                rows = rows.filter(quantity__gte=-delta)
            updated = rows.update(quantity=F('quantity') + delta, updated_at=timezone.now())
            if not updated:
                _raise_for_failed_update(product_id, delta)
            movement = StockMovement.objects.create(
                product_id=product_id,
                delta=delta,
                reason=reason,
                sale=sale,
                sale_item_id=sale_item_id,
                created_by=user if user is not None and user.is_authenticated else None,
                notes=notes,
            )
    except DatabaseError as e:
        raise StorageError(f"Stock update failed for product {product_id}: {e}", product_id=product_id) from e

    logger.debug(f"Stock {product_id} {delta:+d} ({reason})")
    return movement


def open_stock(product, quantity=0, user=None):
    """Create the stock row for a new product, with an opening movement"""
    quantity = int(quantity)
    if quantity < 0:
        raise ValidationError('Opening stock cannot be negative', quantity=quantity)
    try:
        stock = Stock.objects.create(product=product, quantity=0)
    except DatabaseError as e:
        raise StorageError(f"Could not create stock record for product {product.id}: {e}") from e
    if quantity:
        apply_delta(product.id, quantity, reason=StockMovement.REASON_OPENING, user=user)
        stock.refresh_from_db()
    return stock


def adjust_stock(product_id, delta, user=None, notes=''):
    """Manual stock correction (goods received, damage, stock take).

    Runs in its own transaction and notifies listeners after commit.
    """
    delta = int(delta)
    if delta == 0:
        raise ValidationError('Adjustment must change the quantity')
    with transaction.atomic():
        movement = apply_delta(
            product_id, delta,
            reason=StockMovement.REASON_ADJUSTMENT,
            user=user,
            notes=notes,
        )
        create_audit_log(
            action='stock_adjust',
            model_name='Stock',
            object_id=product_id,
            user=user,
            changes={'delta': delta, 'notes': notes, 'movement_id': movement.id},
        )
        events.notify_data_changed('inventory', {events.STOCK}, product_ids=[product_id])
    logger.info(f"Stock adjusted for product {product_id}: {delta:+d}")
    return movement
