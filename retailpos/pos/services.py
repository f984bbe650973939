"""
Sale transaction orchestrator.

create_sale and update_sale keep four records consistent: the customer, the
sale header, its line items and the stock of every product involved.

    validate -> pre-check stock -> resolve customer -> write header
             -> reconcile line items -> apply stock deltas

With settings.SALES_ATOMIC_WRITES (the default) each call is one database
transaction and any failure rolls all of it back. With it turned off the
writes are best-effort: stock failures are collected and reported together
as one PartialSaleError once every item has been processed.
"""
import contextlib
import datetime
import logging
import uuid
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Prefetch
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from retailpos.catalog.models import Product
from retailpos.core import events
from retailpos.core.exceptions import (
    ConflictError, PartialSaleError, SaleNotFoundError, StorageError, ValidationError,
)
from retailpos.core.utils import create_audit_log, get_tax_rate, to_money
from retailpos.inventory import ledger
from retailpos.parties.directory import normalize_phone, resolve_customer
from .filters import SaleFilter
from .models import Sale, SaleItem
from .reconciler import LineItem, apply_plan, build_plan

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {value for value, _label in Sale.PAYMENT_METHOD_CHOICES}


def atomic_writes_enabled():
    return getattr(settings, 'SALES_ATOMIC_WRITES', True)


def _write_scope():
    if atomic_writes_enabled():
        return transaction.atomic()
    return contextlib.nullcontext()


def generate_invoice_number(now=None):
    """INV-YYYYMMDD-XXXXXXXX (date plus 8 hex characters)"""
    now = now or timezone.now()
    return f"INV-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


# Input validation

def _parse_quantity(value, position):
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Item {position}: quantity is required", item=position)
    try:
        quantity = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Item {position}: quantity must be a whole number", item=position)
    if not quantity.is_finite() or quantity != quantity.to_integral_value() or quantity <= 0:
        raise ValidationError(f"Item {position}: quantity must be a positive whole number", item=position)
    return int(quantity)


def _parse_price(value, position):
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Item {position}: unit price must be a number", item=position)
    if not price.is_finite() or price < 0:
        raise ValidationError(f"Item {position}: unit price cannot be negative", item=position)
    return to_money(price)


def _parse_items(raw_items, allow_ids=True, persisted=()):
    """Turn item dicts into LineItems.

    Each dict holds 'product' (or 'product_id'), 'quantity', optionally
    'unit_price' and, for items that already exist, 'id'.

    A missing unit_price keeps the price stored on the row named by 'id'
    (looked up in ``persisted``) as long as the product is unchanged;
    new items and product swaps fall back to the product's list price.
    """
    if not raw_items:
        raise ValidationError('A sale needs at least one line item')

    product_ids = set()
    for position, raw in enumerate(raw_items, start=1):
        product_id = raw.get('product_id', raw.get('product'))
        if product_id in (None, ''):
            raise ValidationError(f"Item {position}: product is required", item=position)
        try:
            product_ids.add(int(product_id))
        except (TypeError, ValueError):
            raise ValidationError(f"Item {position}: invalid product {product_id!r}", item=position)

    try:
        products = Product.objects.in_bulk(product_ids)
    except DatabaseError as e:
        raise StorageError(f"Could not load products: {e}") from e
    missing = sorted(product_ids - set(products))
    if missing:
        raise ValidationError(f"Unknown products: {', '.join(map(str, missing))}", product_ids=missing)

    stored_prices = {item.id: (item.product_id, item.unit_price) for item in persisted}
    items = []
    for position, raw in enumerate(raw_items, start=1):
        product = products[int(raw.get('product_id', raw.get('product')))]
        item_id = raw.get('id')
        if item_id is not None:
            if not allow_ids:
                raise ValidationError(f"Item {position}: new sales cannot reference existing line items", item=position)
            try:
                item_id = int(item_id)
            except (TypeError, ValueError):
                raise ValidationError(f"Item {position}: invalid line item id {item_id!r}", item=position)
        unit_price = raw.get('unit_price')
        if unit_price in (None, ''):
            unit_price = _default_price(product, item_id, stored_prices)
        else:
            unit_price = _parse_price(unit_price, position)
        items.append(LineItem(
            product_id=product.id,
            quantity=_parse_quantity(raw.get('quantity'), position),
            unit_price=unit_price,
            id=item_id,
        ))
    return items


def _default_price(product, item_id, stored_prices):
    stored = stored_prices.get(item_id)
    if stored is not None and stored[0] == product.id:
        return stored[1]
    return product.price


def _parse_sale_date(value):
    """Accept a datetime, a date, or their ISO strings; naive values use the current time zone"""
    if isinstance(value, str):
        parsed = parse_datetime(value.strip())
        if parsed is None:
            day = parse_date(value.strip())
            if day is None:
                raise ValidationError(f"Invalid sale date {value!r}", sale_date=value)
            parsed = datetime.datetime.combine(day, datetime.time())
        value = parsed
    elif isinstance(value, datetime.date) and not isinstance(value, datetime.datetime):
        value = datetime.datetime.combine(value, datetime.time())
    if not isinstance(value, datetime.datetime):
        raise ValidationError(f"Invalid sale date {value!r}", sale_date=str(value))
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


def _clean_header(header, existing=None):
    """Validate the header fields; omitted optional fields keep ``existing`` values"""
    name = (header.get('customer_name') or '').strip()
    if not name:
        raise ValidationError('Customer name is required')
    phone = normalize_phone(header.get('customer_phone'))

    payment_method = header.get('payment_method')
    if payment_method in (None, ''):
        payment_method = existing.payment_method if existing else 'cash'
    payment_method = str(payment_method).strip().lower()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Unknown payment method {payment_method!r}",
            allowed=sorted(PAYMENT_METHODS),
        )

    sale_date = header.get('sale_date')
    if sale_date in (None, ''):
        sale_date = existing.sale_date if existing else timezone.now()
    else:
        sale_date = _parse_sale_date(sale_date)

    return {
        'customer_name': name,
        'customer_phone': phone,
        'customer_email': (header.get('customer_email') or '').strip(),
        'payment_method': payment_method,
        'sale_date': sale_date,
    }


def _money_field(header, key):
    value = header.get(key)
    if value in (None, ''):
        return None
    try:
        return to_money(value)
    except InvalidOperation:
        raise ValidationError(f"{key} must be a number", field=key)


def calculate_totals(items, tax_rate=None):
    """(subtotal, tax, total) for a list of LineItems, tax rounded half-up to cents"""
    if tax_rate is None:
        tax_rate = get_tax_rate()
    subtotal = sum((item.total_price for item in items), Decimal('0.00'))
    tax = to_money(subtotal * tax_rate)
    return subtotal, tax, subtotal + tax


def _resolve_totals(header, items):
    """Totals for an edit: caller-supplied figures are verified, missing ones derived"""
    subtotal, computed_tax, _total = calculate_totals(items)
    tax = _money_field(header, 'tax_amount')
    if tax is None:
        tax = computed_tax
    if tax < 0:
        raise ValidationError('tax_amount cannot be negative', tax_amount=str(tax))
    total = _money_field(header, 'total_amount')
    if total is None:
        total = subtotal + tax
    if total != subtotal + tax:
        raise ValidationError(
            'total_amount does not match line items plus tax',
            total_amount=str(total),
            subtotal=str(subtotal),
            tax_amount=str(tax),
        )
    return subtotal, tax, total


# Persistence

def _insert_sale(fields):
    """Insert the header under a fresh invoice number, retrying on collisions"""
    attempts = getattr(settings, 'SALES_INVOICE_NUMBER_ATTEMPTS', 5)
    for attempt in range(1, attempts + 1):
        invoice_number = generate_invoice_number()
        try:
            with transaction.atomic():
                return Sale.objects.create(invoice_number=invoice_number, **fields)
        except IntegrityError as e:
            if not Sale.objects.filter(invoice_number=invoice_number).exists():
                raise StorageError(f"Could not save sale: {e}") from e
            logger.warning(f"Invoice number {invoice_number} already taken (attempt {attempt}/{attempts})")
    raise ConflictError(
        f"Could not allocate a unique invoice number after {attempts} attempts",
        attempts=attempts,
    )


def _load_sale(sale_id, lock):
    queryset = Sale.objects.select_for_update() if lock else Sale.objects.all()
    try:
        return queryset.get(pk=sale_id)
    except Sale.DoesNotExist:
        raise SaleNotFoundError(f"Sale {sale_id} does not exist", sale_id=sale_id)


def _persisted_items(sale, lock):
    queryset = SaleItem.objects.filter(sale=sale).order_by('id')
    if lock:
        queryset = queryset.select_for_update()
    return [LineItem.from_model(item) for item in queryset]


def _check_original_items(original_items, persisted):
    """The caller's view of the sale must match what is stored"""
    claimed = {(item.id, item.product_id, item.quantity, item.unit_price) for item in original_items}
    stored = {(item.id, item.product_id, item.quantity, item.unit_price) for item in persisted}
    if claimed != stored or len(original_items) != len(persisted):
        raise ConflictError(
            'The sale was changed since it was loaded; reload it and edit again',
            expected=[item.as_dict() for item in persisted],
        )


def _fetch_sale(**lookup):
    items = SaleItem.objects.select_related('product', 'product__stock').order_by('id')
    return (
        Sale.objects.select_related('customer', 'created_by')
        .prefetch_related(Prefetch('items', queryset=items))
        .filter(**lookup)
        .first()
    )


def _finish(sale, failures):
    if failures:
        raise PartialSaleError(failures, sale_id=sale.id)


# Operations

def create_sale(header, line_items, *, user=None):
    """Record a new sale and take its items out of stock.

    Args:
        header: dict with customer_name, customer_phone, customer_email,
            payment_method and optionally sale_date
        line_items: list of dicts with product, quantity and unit_price
        user: staff member ringing up the sale

    Returns the persisted Sale with items prefetched.

    Raises:
        ValidationError (InsufficientStockError when stock is short)
        ConflictError, StorageError (PartialSaleError in best-effort mode)
    """
    items = _parse_items(line_items, allow_ids=False)
    fields = _clean_header(header)
    subtotal, tax, total = calculate_totals(items)
    plan = build_plan(items, [])
    ledger.check_availability(plan.stock_deltas())

    strict = atomic_writes_enabled()
    with _write_scope():
        try:
            customer = resolve_customer(
                fields['customer_name'], fields['customer_phone'], fields['customer_email'], user=user,
            )
            sale = _insert_sale({
                'customer': customer,
                'customer_name': customer.name,
                'customer_phone': customer.phone,
                'customer_email': customer.email,
                'payment_method': fields['payment_method'],
                'sale_date': fields['sale_date'],
                'subtotal': subtotal,
                'tax_amount': tax,
                'total_amount': total,
                'created_by': user if user is not None and user.is_authenticated else None,
            })
            failures = apply_plan(sale, plan, user=user, strict=strict, creating=True)
        except DatabaseError as e:
            raise StorageError(f"Could not save sale: {e}") from e

        create_audit_log(
            action='sale_create',
            model_name='Sale',
            object_id=sale.id,
            object_reference=sale.invoice_number,
            changes={
                'customer_id': customer.id,
                'subtotal': str(subtotal),
                'tax_amount': str(tax),
                'total_amount': str(total),
                'items': [item.as_dict() for item in items],
                'failures': failures,
            },
            user=user,
        )
        events.notify_data_changed(
            'pos', {events.SALES, events.STOCK},
            sale_id=sale.id, product_ids=sorted(plan.stock_deltas()),
        )

    logger.info(f"Sale {sale.invoice_number} created: {len(items)} items, total {total}")
    _finish(sale, failures)
    return _fetch_sale(pk=sale.pk)


def update_sale(sale_id, header, desired_items, original_items=None, *, user=None):
    """Edit an existing sale: header, customer and line items.

    ``desired_items`` is the complete list the sale should end up with;
    items carrying an ``id`` refer to existing rows, items without one are
    added. Rows missing from the list are removed. Stock moves by the net
    quantity change of each product. An existing item sent without a
    unit_price keeps the price it was sold at.

    ``original_items``, when given, is the item list the caller's edit was
    based on; if it no longer matches the stored rows ConflictError is raised
    before anything is written.

    Totals (tax_amount, total_amount) may be supplied in ``header``; they
    must agree with the desired items. Missing ones are computed with the
    configured tax rate.
    """
    if not desired_items:
        raise ValidationError('A sale needs at least one line item')
    strict = atomic_writes_enabled()

    with _write_scope():
        try:
            sale = _load_sale(sale_id, lock=strict)
            fields = _clean_header(header, existing=sale)
            persisted = _persisted_items(sale, lock=strict)
            if original_items is not None:
                _check_original_items(_parse_items(original_items, allow_ids=True, persisted=persisted), persisted)
            desired = _parse_items(desired_items, allow_ids=True, persisted=persisted)

            plan = build_plan(desired, persisted)
            subtotal, tax, total = _resolve_totals(header, desired)
            ledger.check_availability(plan.stock_deltas())

            customer = resolve_customer(
                fields['customer_name'], fields['customer_phone'], fields['customer_email'], user=user,
            )
            new_values = {
                'customer_id': customer.id,
                'customer_name': customer.name,
                'customer_phone': customer.phone,
                'customer_email': customer.email,
                'payment_method': fields['payment_method'],
                'sale_date': fields['sale_date'],
                'subtotal': subtotal,
                'tax_amount': tax,
                'total_amount': total,
            }
            changes = {}
            for name, value in new_values.items():
                current = getattr(sale, name)
                if current != value:
                    changes[name] = {'old': str(current), 'new': str(value)}
                    setattr(sale, name, value)
            if changes:
                sale.save(update_fields=list(changes) + ['updated_at'])

            failures = apply_plan(sale, plan, user=user, strict=strict)
        except DatabaseError as e:
            raise StorageError(f"Could not update sale {sale_id}: {e}") from e

        if changes or not plan.is_empty:
            create_audit_log(
                action='sale_update',
                model_name='Sale',
                object_id=sale.id,
                object_reference=sale.invoice_number,
                changes={'header': changes, 'items': plan.summary(), 'failures': failures},
                user=user,
            )
            resources = {events.SALES}
            if plan.stock_deltas():
                resources.add(events.STOCK)
            events.notify_data_changed(
                'pos', resources,
                sale_id=sale.id, product_ids=sorted(plan.stock_deltas()),
            )

    if plan.is_empty and not changes:
        logger.info(f"Sale {sale.invoice_number} unchanged")
    else:
        logger.info(
            f"Sale {sale.invoice_number} updated: {len(plan.to_delete)} removed, "
            f"{len(plan.to_update)} changed, {len(plan.to_insert)} added, total {total}"
        )
    _finish(sale, failures)
    return _fetch_sale(pk=sale.pk)


def get_sale(sale_id):
    """Sale with customer, items, products and their stock; None if absent"""
    try:
        return _fetch_sale(pk=sale_id)
    except DatabaseError as e:
        raise StorageError(f"Could not load sale {sale_id}: {e}") from e


def get_sale_by_invoice_number(invoice_number):
    """Sale with customer, items, products and their stock; None if absent"""
    invoice_number = (invoice_number or '').strip()
    if not invoice_number:
        return None
    try:
        return _fetch_sale(invoice_number=invoice_number)
    except DatabaseError as e:
        raise StorageError(f"Could not load sale {invoice_number}: {e}") from e


def list_sales(**filters):
    """Sales newest first, filtered like the sales list endpoint.

    Accepted filters: customer, phone, invoice_number (substring),
    payment_method, date_from, date_to.
    """
    data = {key: value for key, value in filters.items() if value not in (None, '')}
    queryset = Sale.objects.select_related('customer').prefetch_related('items')
    filterset = SaleFilter(data, queryset=queryset)
    if not filterset.is_valid():
        raise ValidationError('Invalid sale filters', errors=filterset.errors.get_json_data())
    return filterset.qs.order_by('-sale_date', '-id')
