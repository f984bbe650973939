"""
Comprehensive test suite for the POS module
Tests: item reconciliation, sale creation and editing, stock consistency, write policies and the sales API
"""
import datetime
import re
from decimal import Decimal
from unittest import mock

from django.core.management import call_command
from django.db import connection
from django.db.models import Sum
from django.test import SimpleTestCase, TestCase, override_settings
from django.test.utils import CaptureQueriesContext
from django.utils import timezone
from io import StringIO
from rest_framework import status

from retailpos.core import events
from retailpos.core.exceptions import (
    ConflictError, InsufficientStockError, PartialSaleError, SaleNotFoundError, StorageError, ValidationError,
)
from retailpos.core.models import AuditLog, Setting
from retailpos.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from retailpos.inventory import ledger
from retailpos.inventory.models import StockMovement
from retailpos.parties.models import Customer
from retailpos.pos import services
from retailpos.pos.models import Sale, SaleItem
from retailpos.pos.reconciler import LineItem, build_plan

A, B, C = 1, 2, 3


def line(product_id, quantity, price='10.00', item_id=None):
    return LineItem(product_id=product_id, quantity=quantity, unit_price=Decimal(price), id=item_id)


class ReconcilerTests(SimpleTestCase):
    """Test build_plan diffing"""

    def test_new_items_are_inserts(self):
        plan = build_plan([line(A, 2), line(A, 1)], [])
        self.assertEqual(len(plan.to_insert), 2)
        self.assertEqual(plan.stock_deltas(), {A: -3})

    def test_quantity_increase(self):
        plan = build_plan([line(A, 5, item_id=1)], [line(A, 2, item_id=1)])
        self.assertEqual(len(plan.to_update), 1)
        self.assertEqual(plan.to_update[0].stock_delta, -3)
        self.assertEqual(plan.stock_deltas(), {A: -3})
        self.assertEqual(plan.to_delete, [])
        self.assertEqual(plan.to_insert, [])

    def test_removed_item_is_deleted(self):
        original = [line(A, 2, item_id=1), line(B, 1, item_id=2)]
        plan = build_plan([line(A, 2, item_id=1)], original)
        self.assertEqual([item.id for item in plan.to_delete], [2])
        self.assertEqual(plan.to_update, [])
        self.assertEqual(plan.stock_deltas(), {B: 1})

    def test_unchanged_items_produce_empty_plan(self):
        original = [line(A, 2, item_id=1), line(B, 1, '5.00', item_id=2)]
        plan = build_plan(list(original), original)
        self.assertTrue(plan.is_empty)
        self.assertEqual(plan.stock_deltas(), {})

    def test_price_only_change(self):
        plan = build_plan([line(A, 2, '12.00', item_id=1)], [line(A, 2, '10.00', item_id=1)])
        self.assertEqual(len(plan.to_update), 1)
        self.assertEqual(plan.to_update[0].stock_delta, 0)
        self.assertEqual(plan.stock_deltas(), {})

    def test_product_swap_on_existing_id(self):
        plan = build_plan([line(B, 2, item_id=1)], [line(A, 2, item_id=1)])
        self.assertEqual([item.product_id for item in plan.to_delete], [A])
        self.assertEqual([item.product_id for item in plan.to_insert], [B])
        self.assertIsNone(plan.to_insert[0].id)
        self.assertEqual(plan.stock_deltas(), {A: 2, B: -2})

    def test_net_deltas_across_categories(self):
        original = [line(A, 2, item_id=1), line(A, 3, item_id=2)]
        desired = [line(A, 4, item_id=1), line(A, 1)]
        plan = build_plan(desired, original)
        # -2 (update) +3 (delete) -1 (insert)
        self.assertEqual(plan.stock_deltas(), {})
        self.assertFalse(plan.is_empty)

    def test_empty_desired_deletes_everything(self):
        original = [line(A, 2, item_id=1), line(B, 1, item_id=2)]
        plan = build_plan([], original)
        self.assertEqual(len(plan.to_delete), 2)
        self.assertEqual(plan.stock_deltas(), {A: 2, B: 1})

    def test_unknown_id(self):
        with self.assertRaises(ValidationError):
            build_plan([line(A, 1, item_id=99)], [line(A, 1, item_id=1)])

    def test_duplicate_ids(self):
        with self.assertRaises(ValidationError):
            build_plan([line(A, 1, item_id=1), line(A, 2, item_id=1)], [line(A, 1, item_id=1)])

    def test_line_total_rounds_to_cents(self):
        self.assertEqual(line(A, 3, '3.33').total_price, Decimal('9.99'))


class InvoiceNumberTests(SimpleTestCase):

    def test_format(self):
        number = services.generate_invoice_number()
        self.assertRegex(number, r'^INV-\d{8}-[0-9A-F]{8}$')
        self.assertIn(timezone.now().strftime('%Y%m%d'), number)

    def test_numbers_differ(self):
        self.assertNotEqual(services.generate_invoice_number(), services.generate_invoice_number())


class CreateSaleTests(TestCase):
    """Test create_sale"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product_a = TestDataFactory.create_product(name='A', price=Decimal('10.00'), stock=10)
        self.product_b = TestDataFactory.create_product(name='B', price=Decimal('5.00'), stock=10)

    def test_single_item_totals_and_stock(self):
        """[{A, qty 2, price 10.00}] at 5% tax: 20.00 + 1.00 = 21.00, stock A -2"""
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')], user=self.user)
        self.assertEqual(sale.subtotal, Decimal('20.00'))
        self.assertEqual(sale.tax_amount, Decimal('1.00'))
        self.assertEqual(sale.total_amount, Decimal('21.00'))
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)
        self.assertEqual(sale.created_by, self.user)

    def test_total_is_items_plus_tax(self):
        sale = TestDataFactory.create_sale([
            (self.product_a, 3, '3.33'),
            (self.product_b, 1, '0.01'),
        ])
        self.assertEqual(sale.subtotal, sale.get_items_total())
        self.assertEqual(sale.subtotal, Decimal('10.00'))
        self.assertEqual(sale.total_amount, sale.subtotal + sale.tax_amount)
        self.assertEqual(sale.tax_amount, Decimal('0.50'))

    def test_tax_rounds_half_up(self):
        sale = TestDataFactory.create_sale([(self.product_a, 3, '3.33')])
        # 9.99 * 0.05 = 0.4995
        self.assertEqual(sale.tax_amount, Decimal('0.50'))

    def test_tax_rate_setting(self):
        Setting.objects.create(key='tax_rate', value='0.18')
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')])
        self.assertEqual(sale.tax_amount, Decimal('3.60'))
        self.assertEqual(sale.total_amount, Decimal('23.60'))

    def test_malformed_tax_rate_setting_falls_back(self):
        Setting.objects.create(key='tax_rate', value='five percent')
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')])
        self.assertEqual(sale.tax_amount, Decimal('1.00'))

    def test_each_product_stock_decremented(self):
        TestDataFactory.create_sale([
            (self.product_a, 2, '10.00'),
            (self.product_b, 3, '5.00'),
            (self.product_a, 1, '9.00'),
        ])
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 7)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 7)

    def test_movements_reference_sale_and_items(self):
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')])
        movement = StockMovement.objects.get(sale=sale)
        self.assertEqual(movement.delta, -2)
        self.assertEqual(movement.reason, StockMovement.REASON_SALE)
        self.assertEqual(movement.sale_item_id, sale.items.get().id)

    def test_invoice_number_and_customer_snapshot(self):
        sale = TestDataFactory.create_sale(
            [(self.product_a, 1, '10.00')],
            name='Asha Rao', phone='+91 98765-43210', email='asha@example.com',
        )
        self.assertRegex(sale.invoice_number, r'^INV-\d{8}-[0-9A-F]{8}$')
        self.assertEqual(sale.customer.phone, '+919876543210')
        self.assertEqual(sale.customer_name, 'Asha Rao')
        self.assertEqual(sale.customer_phone, '+919876543210')
        self.assertEqual(sale.customer_email, 'asha@example.com')

    def test_returning_customer_is_reused(self):
        first = TestDataFactory.create_sale([(self.product_a, 1, '10.00')], phone='9876543210')
        second = TestDataFactory.create_sale([(self.product_b, 1, '5.00')], phone='98765 43210')
        self.assertEqual(first.customer_id, second.customer_id)
        self.assertEqual(Customer.objects.count(), 1)

    def test_unit_price_defaults_to_product_price(self):
        sale = services.create_sale(TestDataFactory.sale_header(), [{'product': self.product_b.id, 'quantity': 2}])
        self.assertEqual(sale.items.get().unit_price, Decimal('5.00'))
        self.assertEqual(sale.subtotal, Decimal('10.00'))

    def test_payment_method_case_insensitive(self):
        sale = TestDataFactory.create_sale([(self.product_a, 1, '10.00')], payment_method='UPI')
        self.assertEqual(sale.payment_method, 'upi')

    def test_audit_log(self):
        sale = TestDataFactory.create_sale([(self.product_a, 1, '10.00')], user=self.user)
        log = AuditLog.objects.get(action='sale_create')
        self.assertEqual(log.object_reference, sale.invoice_number)
        self.assertEqual(log.user, self.user)
        self.assertEqual(log.changes['total_amount'], '10.50')

    def assert_nothing_written(self):
        self.assertEqual(Sale.objects.count(), 0)
        self.assertEqual(SaleItem.objects.count(), 0)
        self.assertEqual(Customer.objects.count(), 0)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 10)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)

    def test_validation_errors(self):
        bad_requests = [
            (TestDataFactory.sale_header(), []),
            (TestDataFactory.sale_header(name=''), [{'product': self.product_a.id, 'quantity': 1}]),
            (TestDataFactory.sale_header(phone=''), [{'product': self.product_a.id, 'quantity': 1}]),
            (TestDataFactory.sale_header(phone='12-34'), [{'product': self.product_a.id, 'quantity': 1}]),
            (TestDataFactory.sale_header(payment_method='cheque'), [{'product': self.product_a.id, 'quantity': 1}]),
            (TestDataFactory.sale_header(), [{'product': self.product_a.id, 'quantity': 0}]),
            (TestDataFactory.sale_header(), [{'product': self.product_a.id, 'quantity': 1.5}]),
            (TestDataFactory.sale_header(), [{'product': self.product_a.id, 'quantity': 1, 'unit_price': '-1'}]),
            (TestDataFactory.sale_header(), [{'product': 999999, 'quantity': 1}]),
            (TestDataFactory.sale_header(), [{'quantity': 1}]),
            (TestDataFactory.sale_header(), [{'id': 5, 'product': self.product_a.id, 'quantity': 1}]),
        ]
        for header, items in bad_requests:
            with self.subTest(header=header, items=items):
                with self.assertRaises(ValidationError):
                    services.create_sale(header, items)
        self.assert_nothing_written()

    def test_oversold_cart_is_rejected(self):
        with self.assertRaises(InsufficientStockError) as ctx:
            TestDataFactory.create_sale([(self.product_a, 8, '10.00'), (self.product_a, 3, '10.00')])
        self.assertEqual(ctx.exception.shortages, {self.product_a.id: {'requested': 11, 'available': 10}})
        self.assert_nothing_written()

    def test_ledger_failure_rolls_back_everything(self):
        """Strict policy: one failed stock update undoes the whole sale"""
        real_apply_delta = ledger.apply_delta

        def fail_for_b(product_id, delta, **kwargs):
            if product_id == self.product_b.id:
                raise StorageError('disk full')
            return real_apply_delta(product_id, delta, **kwargs)

        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=fail_for_b):
            with self.assertRaises(StorageError):
                TestDataFactory.create_sale([(self.product_a, 2, '10.00'), (self.product_b, 1, '5.00')])
        self.assert_nothing_written()
        self.assertFalse(StockMovement.objects.filter(reason=StockMovement.REASON_SALE).exists())

    @override_settings(SALES_ATOMIC_WRITES=False)
    def test_best_effort_reports_partial_failure(self):
        real_apply_delta = ledger.apply_delta

        def fail_for_b(product_id, delta, **kwargs):
            if product_id == self.product_b.id:
                raise StorageError('disk full')
            return real_apply_delta(product_id, delta, **kwargs)

        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=fail_for_b):
            with self.assertRaises(PartialSaleError) as ctx:
                TestDataFactory.create_sale([(self.product_a, 2, '10.00'), (self.product_b, 1, '5.00')])

        error = ctx.exception
        self.assertEqual(len(error.failures), 1)
        self.assertEqual(error.failures[0]['product_id'], self.product_b.id)
        self.assertEqual(error.failures[0]['delta'], -1)
        sale = Sale.objects.get(pk=error.sale_id)
        self.assertEqual(sale.items.count(), 2)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)

    def test_invoice_number_collision_is_retried(self):
        existing = TestDataFactory.create_sale([(self.product_a, 1, '10.00')])
        fresh = 'INV-20260101-0000BEEF'
        with mock.patch('retailpos.pos.services.generate_invoice_number', side_effect=[existing.invoice_number, fresh]):
            sale = TestDataFactory.create_sale([(self.product_b, 1, '5.00')])
        self.assertEqual(sale.invoice_number, fresh)

    def test_invoice_number_retries_exhausted(self):
        existing = TestDataFactory.create_sale([(self.product_a, 1, '10.00')], phone='9000000001')
        with mock.patch('retailpos.pos.services.generate_invoice_number', return_value=existing.invoice_number) as generator:
            with self.assertRaises(ConflictError):
                TestDataFactory.create_sale([(self.product_b, 1, '5.00')], phone='9000000002')
        self.assertEqual(generator.call_count, 5)
        self.assertEqual(Sale.objects.count(), 1)
        self.assertFalse(Customer.objects.filter(phone='9000000002').exists())
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)

    def test_data_changed_sent_after_commit(self):
        received = []

        def receiver(sender, resources, **kwargs):
            received.append(resources)

        events.data_changed.connect(receiver)
        self.addCleanup(events.data_changed.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            TestDataFactory.create_sale([(self.product_a, 1, '10.00')])
        self.assertEqual(set().union(*received), {events.SALES, events.STOCK, events.CUSTOMERS})

    def test_no_notification_when_sale_fails(self):
        received = []

        def receiver(sender, resources, **kwargs):
            received.append(resources)

        events.data_changed.connect(receiver)
        self.addCleanup(events.data_changed.disconnect, receiver)

        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=StorageError('disk full')):
            with self.captureOnCommitCallbacks(execute=True):
                with self.assertRaises(StorageError):
                    TestDataFactory.create_sale([(self.product_a, 1, '10.00')])
        self.assertEqual(received, [])


class UpdateSaleTests(TestCase):
    """Test update_sale reconciliation against persisted items"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product_a = TestDataFactory.create_product(name='A', price=Decimal('10.00'), stock=10)
        self.product_b = TestDataFactory.create_product(name='B', price=Decimal('5.00'), stock=10)
        self.product_c = TestDataFactory.create_product(name='C', price=Decimal('2.00'), stock=3)
        self.sale = TestDataFactory.create_sale(
            [(self.product_a, 2, '10.00'), (self.product_b, 1, '5.00')],
            name='Asha Rao', phone='9876543210',
        )
        self.item_a = self.sale.items.get(product=self.product_a)
        self.item_b = self.sale.items.get(product=self.product_b)
        self.header = TestDataFactory.sale_header(name='Asha Rao', phone='9876543210')

    def item(self, row, quantity=None, unit_price=None):
        return {
            'id': row.id,
            'product': row.product_id,
            'quantity': row.quantity if quantity is None else quantity,
            'unit_price': row.unit_price if unit_price is None else unit_price,
        }

    def assert_stock_matches_movements(self):
        for product in (self.product_a, self.product_b, self.product_c):
            total = StockMovement.objects.filter(product=product).aggregate(total=Sum('delta'))['total']
            self.assertEqual(total, TestDataFactory.stock_of(product))

    def test_initial_state(self):
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 9)
        self.assertEqual(self.sale.total_amount, Decimal('26.25'))

    def test_quantity_increase(self):
        """[{id 1, A, 2}] -> [{id 1, A, 5}]: row updated to 5, stock A -3"""
        sale = services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 5), self.item(self.item_b)])
        self.item_a.refresh_from_db()
        self.assertEqual(self.item_a.quantity, 5)
        self.assertEqual(self.item_a.total_price, Decimal('50.00'))
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 5)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 9)
        self.assertEqual(sale.subtotal, Decimal('55.00'))
        self.assertEqual(sale.total_amount, Decimal('57.75'))
        movement = StockMovement.objects.filter(reason=StockMovement.REASON_SALE_ITEM_CHANGED).get()
        self.assertEqual((movement.product_id, movement.delta), (self.product_a.id, -3))

    def test_quantity_decrease_returns_stock(self):
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 1), self.item(self.item_b)])
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 9)

    def test_removed_item(self):
        """[{id 1, A, 2}, {id 2, B, 1}] -> [{id 1, A, 2}]: row 2 deleted, stock B +1"""
        sale = services.update_sale(self.sale.id, self.header, [self.item(self.item_a)])
        self.assertFalse(SaleItem.objects.filter(pk=self.item_b.pk).exists())
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)
        self.assertEqual(sale.total_amount, Decimal('21.00'))
        movement = StockMovement.objects.get(reason=StockMovement.REASON_SALE_ITEM_REMOVED)
        self.assertEqual(movement.sale_item_id, self.item_b.id)

    def test_added_item(self):
        desired = [self.item(self.item_a), self.item(self.item_b), {'product': self.product_c.id, 'quantity': 2}]
        sale = services.update_sale(self.sale.id, self.header, desired)
        self.assertEqual(sale.items.count(), 3)
        self.assertEqual(TestDataFactory.stock_of(self.product_c), 1)
        self.assertEqual(sale.subtotal, Decimal('29.00'))
        self.assertTrue(StockMovement.objects.filter(reason=StockMovement.REASON_SALE_ITEM_ADDED, product=self.product_c).exists())

    def test_price_change_keeps_stock(self):
        movements = StockMovement.objects.count()
        sale = services.update_sale(self.sale.id, self.header, [self.item(self.item_a, unit_price='8.00'), self.item(self.item_b)])
        self.assertEqual(StockMovement.objects.count(), movements)
        self.assertEqual(sale.subtotal, Decimal('21.00'))
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)

    def test_existing_items_keep_their_price(self):
        """Changing the list price does not reprice sold items"""
        self.product_a.price = Decimal('99.00')
        self.product_a.save()
        sale = services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 3), self.item(self.item_b)])
        self.assertEqual(sale.items.get(product=self.product_a).unit_price, Decimal('10.00'))

    def test_existing_item_sent_without_price(self):
        """{id, product, quantity} keeps the price the row was sold at"""
        self.product_a.price = Decimal('99.00')
        self.product_a.save()
        desired = [
            {'id': self.item_a.id, 'product': self.product_a.id, 'quantity': 5},
            {'id': self.item_b.id, 'product': self.product_b.id, 'quantity': 1},
        ]
        sale = services.update_sale(self.sale.id, self.header, desired)
        row = sale.items.get(product=self.product_a)
        self.assertEqual(row.unit_price, Decimal('10.00'))
        self.assertEqual(row.total_price, Decimal('50.00'))
        self.assertEqual(sale.subtotal, Decimal('55.00'))
        self.assertEqual(sale.subtotal, sale.get_items_total())
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 5)

    def test_swapped_product_without_price_uses_list_price(self):
        desired = [{'id': self.item_a.id, 'product': self.product_c.id, 'quantity': 1}, self.item(self.item_b)]
        sale = services.update_sale(self.sale.id, self.header, desired)
        self.assertEqual(sale.items.get(product=self.product_c).unit_price, Decimal('2.00'))

    def test_product_swap(self):
        desired = [{'id': self.item_a.id, 'product': self.product_c.id, 'quantity': 2, 'unit_price': '2.00'}, self.item(self.item_b)]
        sale = services.update_sale(self.sale.id, self.header, desired)
        self.assertFalse(SaleItem.objects.filter(pk=self.item_a.pk).exists())
        self.assertEqual(sale.items.get(product=self.product_c).quantity, 2)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 10)
        self.assertEqual(TestDataFactory.stock_of(self.product_c), 1)

    def test_repeated_update_is_idempotent(self):
        desired = [self.item(self.item_a, 4), self.item(self.item_b)]
        services.update_sale(self.sale.id, self.header, desired)
        stock_a = TestDataFactory.stock_of(self.product_a)
        movements = StockMovement.objects.count()

        self.item_a.refresh_from_db()
        with CaptureQueriesContext(connection) as ctx:
            services.update_sale(self.sale.id, self.header, [self.item(self.item_a), self.item(self.item_b)])
        writes = [q['sql'] for q in ctx.captured_queries if q['sql'].lstrip().upper().startswith(('INSERT', 'UPDATE', 'DELETE'))]
        self.assertEqual(writes, [])
        self.assertEqual(TestDataFactory.stock_of(self.product_a), stock_a)
        self.assertEqual(StockMovement.objects.count(), movements)

    def test_header_changes(self):
        new_date = timezone.now() - datetime.timedelta(days=2)
        header = TestDataFactory.sale_header(name='Asha R', phone='9876543210', payment_method='card', sale_date=new_date)
        sale = services.update_sale(self.sale.id, header, [self.item(self.item_a), self.item(self.item_b)])
        self.assertEqual(sale.payment_method, 'card')
        self.assertEqual(sale.sale_date, new_date)
        self.assertEqual(sale.customer_name, 'Asha R')
        self.assertEqual(sale.customer.name, 'Asha R')
        self.assertEqual(sale.invoice_number, self.sale.invoice_number)

    def test_sale_date_from_string(self):
        header = TestDataFactory.sale_header(name='Asha Rao', phone='9876543210', sale_date='2026-01-15')
        sale = services.update_sale(self.sale.id, header, [self.item(self.item_a), self.item(self.item_b)])
        self.assertEqual(timezone.localtime(sale.sale_date).date().isoformat(), '2026-01-15')

    def test_change_of_customer(self):
        header = TestDataFactory.sale_header(name='Ravi', phone='9123456789')
        sale = services.update_sale(self.sale.id, header, [self.item(self.item_a), self.item(self.item_b)])
        self.assertEqual(sale.customer.phone, '9123456789')
        self.assertEqual(sale.customer_phone, '9123456789')
        self.assertEqual(Customer.objects.count(), 2)

    def test_caller_totals_are_verified(self):
        desired = [self.item(self.item_a, 5), self.item(self.item_b)]
        header = dict(self.header, tax_amount='2.75', total_amount='60.00')
        with self.assertRaises(ValidationError):
            services.update_sale(self.sale.id, header, desired)
        self.item_a.refresh_from_db()
        self.assertEqual(self.item_a.quantity, 2)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)

    def test_caller_totals_accepted_when_consistent(self):
        desired = [self.item(self.item_a, 5), self.item(self.item_b)]
        header = dict(self.header, tax_amount='0.00', total_amount='55.00')
        sale = services.update_sale(self.sale.id, header, desired)
        self.assertEqual(sale.tax_amount, Decimal('0.00'))
        self.assertEqual(sale.total_amount, Decimal('55.00'))

    def test_unknown_item_id(self):
        other = TestDataFactory.create_sale([(self.product_c, 1, '2.00')], phone='9000000009')
        foreign = other.items.get()
        with self.assertRaises(ValidationError):
            services.update_sale(self.sale.id, self.header, [self.item(self.item_a), self.item(foreign)])

    def test_empty_items_rejected(self):
        with self.assertRaises(ValidationError):
            services.update_sale(self.sale.id, self.header, [])
        self.assertEqual(self.sale.items.count(), 2)

    def test_missing_customer_fields(self):
        with self.assertRaises(ValidationError):
            services.update_sale(self.sale.id, TestDataFactory.sale_header(phone=''), [self.item(self.item_a)])
        self.assertEqual(self.sale.items.count(), 2)

    def test_missing_sale(self):
        with self.assertRaises(SaleNotFoundError):
            services.update_sale(999999, self.header, [self.item(self.item_a)])

    def test_oversold_update_rejected(self):
        desired = [self.item(self.item_a, 11), self.item(self.item_b)]
        with self.assertRaises(InsufficientStockError):
            services.update_sale(self.sale.id, self.header, desired)
        self.item_a.refresh_from_db()
        self.assertEqual(self.item_a.quantity, 2)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)

    def test_increase_up_to_stock_on_hand(self):
        """Quantity already on the sale counts towards what may be sold"""
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 10), self.item(self.item_b)])
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 0)

    def test_stale_original_items(self):
        original = [self.item(self.item_a, 1), self.item(self.item_b)]
        with self.assertRaises(ConflictError):
            services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 3), self.item(self.item_b)], original)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 8)

    def test_matching_original_items(self):
        original = [self.item(self.item_a), self.item(self.item_b)]
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 3), self.item(self.item_b)], original)
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 7)

    def test_original_items_sent_without_price(self):
        """A price-less snapshot is compared against the stored prices, not the list price"""
        self.product_a.price = Decimal('99.00')
        self.product_a.save()
        original = [
            {'id': self.item_a.id, 'product': self.product_a.id, 'quantity': 2},
            {'id': self.item_b.id, 'product': self.product_b.id, 'quantity': 1},
        ]
        sale = services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 3), self.item(self.item_b)], original)
        self.assertEqual(sale.items.get(product=self.product_a).quantity, 3)

    def test_two_rows_of_one_product_moving_opposite_ways(self):
        """Net change fits the stock even when one row grows before the other shrinks"""
        product = TestDataFactory.create_product(name='D', stock=10)
        sale = TestDataFactory.create_sale([(product, 1, '10.00'), (product, 4, '10.00')], phone='9000000011')
        first, second = sale.items.order_by('id')
        ledger.adjust_stock(product.id, -4)
        self.assertEqual(TestDataFactory.stock_of(product), 1)

        header = TestDataFactory.sale_header(phone='9000000011')
        desired = [self.item(first, 4), self.item(second, 2)]
        updated = services.update_sale(sale.id, header, desired)

        self.assertEqual([row.quantity for row in updated.items.all()], [4, 2])
        self.assertEqual(TestDataFactory.stock_of(product), 0)
        total = StockMovement.objects.filter(product=product).aggregate(total=Sum('delta'))['total']
        self.assertEqual(total, 0)

    def test_ledger_failure_rolls_back_edit(self):
        desired = [self.item(self.item_a, 5), {'product': self.product_c.id, 'quantity': 1}]
        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=StorageError('disk full')):
            with self.assertRaises(StorageError):
                services.update_sale(self.sale.id, self.header, desired)
        self.assertEqual(self.sale.items.count(), 2)
        self.item_a.refresh_from_db()
        self.assertEqual(self.item_a.quantity, 2)
        self.assertTrue(SaleItem.objects.filter(pk=self.item_b.pk).exists())
        self.assertFalse(AuditLog.objects.filter(action='sale_update').exists())

    @override_settings(SALES_ATOMIC_WRITES=False)
    def test_best_effort_update_collects_failures(self):
        real_apply_delta = ledger.apply_delta

        def fail_for_c(product_id, delta, **kwargs):
            if product_id == self.product_c.id:
                raise StorageError('disk full')
            return real_apply_delta(product_id, delta, **kwargs)

        desired = [self.item(self.item_a), {'product': self.product_c.id, 'quantity': 1}]
        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=fail_for_c):
            with self.assertRaises(PartialSaleError) as ctx:
                services.update_sale(self.sale.id, self.header, desired)
        self.assertEqual([f['product_id'] for f in ctx.exception.failures], [self.product_c.id])
        self.assertEqual(ctx.exception.sale_id, self.sale.id)
        # The removal of B and its stock return went through
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)
        self.assertEqual(TestDataFactory.stock_of(self.product_c), 3)

    def test_audit_log(self):
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 3)], user=self.user)
        log = AuditLog.objects.get(action='sale_update')
        self.assertEqual(log.changes['items']['deleted'], [self.item_b.id])
        self.assertEqual(log.changes['items']['updated'], [self.item_a.id])
        self.assertEqual(log.user, self.user)

    def test_stock_consistent_after_many_edits(self):
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 4), self.item(self.item_b, 3)])
        services.update_sale(self.sale.id, self.header, [self.item(self.item_a, 1), {'product': self.product_c.id, 'quantity': 3}])
        sale = services.get_sale(self.sale.id)
        item_c = sale.items.get(product=self.product_c)
        services.update_sale(self.sale.id, self.header, [{'id': item_c.id, 'product': self.product_a.id, 'quantity': 6}])

        self.assert_stock_matches_movements()
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 4)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)
        self.assertEqual(TestDataFactory.stock_of(self.product_c), 3)
        out = StringIO()
        call_command('check_stock_sync', '--fail-on-discrepancy', stdout=out)
        self.assertIn('No discrepancies found', out.getvalue())


class SaleQueryTests(TestCase):
    """Test get_sale_by_invoice_number and list_sales"""

    def setUp(self):
        self.product = TestDataFactory.create_product(stock=20)
        self.first = TestDataFactory.create_sale([(self.product, 1, '10.00')], name='Asha', phone='9876543210')
        self.second = TestDataFactory.create_sale([(self.product, 2, '10.00')], name='Ravi', phone='9123456789', payment_method='upi')

    def test_get_by_invoice_number(self):
        sale = services.get_sale_by_invoice_number(self.first.invoice_number)
        self.assertEqual(sale.pk, self.first.pk)
        with self.assertNumQueries(0):
            items = list(sale.items.all())
            self.assertEqual(items[0].product.stock.quantity, 17)
            self.assertEqual(sale.customer.name, 'Asha')

    def test_get_by_unknown_invoice_number(self):
        self.assertIsNone(services.get_sale_by_invoice_number('INV-00000000-NOPE'))
        self.assertIsNone(services.get_sale_by_invoice_number('  '))

    def test_list_newest_first(self):
        self.assertEqual(list(services.list_sales()), [self.second, self.first])

    def test_list_filters(self):
        self.assertEqual(list(services.list_sales(customer=self.first.customer_id)), [self.first])
        self.assertEqual(list(services.list_sales(phone='91234 56789')), [self.second])
        self.assertEqual(list(services.list_sales(payment_method='upi')), [self.second])
        fragment = self.first.invoice_number[-6:].lower()
        self.assertEqual(list(services.list_sales(invoice_number=fragment)), [self.first])

    def test_list_date_range(self):
        today = timezone.localdate().isoformat()
        self.assertEqual(len(services.list_sales(date_from=today, date_to=today)), 2)
        self.assertEqual(len(services.list_sales(date_from='2000-01-01', date_to='2000-01-02')), 0)

    def test_invalid_filter(self):
        with self.assertRaises(ValidationError):
            services.list_sales(date_from='not-a-date')


class SaleAPITests(TestCase):
    """Test sales API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.product_a = TestDataFactory.create_product(name='A', price=Decimal('10.00'), stock=10)
        self.product_b = TestDataFactory.create_product(name='B', price=Decimal('5.00'), stock=10)

    def payload(self, items, **header):
        data = TestDataFactory.sale_header(**header)
        data['items'] = items
        return data

    def test_create_sale(self):
        data = self.payload([{'product': self.product_a.id, 'quantity': 2, 'unit_price': '10.00'}], payment_method='CASH')
        response = self.client.post('/api/v1/sales/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(re.match(r'^INV-\d{8}-[0-9A-F]{8}$', response.data['invoice_number']))
        self.assertEqual(response.data['total_amount'], '21.00')
        self.assertEqual(response.data['items'][0]['available_stock'], 8)
        self.assertEqual(response.data['created_by'], self.user.id)

    def test_create_sale_without_items(self):
        response = self.client.post('/api/v1/sales/', self.payload([]), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(Sale.objects.count(), 0)

    def test_create_sale_bad_phone(self):
        data = self.payload([{'product': self.product_a.id, 'quantity': 1}], phone='12')
        response = self.client.post('/api/v1/sales/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'ValidationError')

    def test_create_sale_insufficient_stock(self):
        data = self.payload([{'product': self.product_a.id, 'quantity': 11}])
        response = self.client.post('/api/v1/sales/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'InsufficientStockError')
        self.assertEqual(response.data['details']['shortages'][str(self.product_a.id)]['available'], 10)

    @override_settings(SALES_ATOMIC_WRITES=False)
    def test_create_sale_partial_failure(self):
        data = self.payload([{'product': self.product_a.id, 'quantity': 1}])
        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=StorageError('disk full')):
            response = self.client.post('/api/v1/sales/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data['error'], 'PartialSaleError')
        self.assertEqual(len(response.data['details']['failures']), 1)

    def test_storage_error_is_503(self):
        data = self.payload([{'product': self.product_a.id, 'quantity': 1}])
        with mock.patch('retailpos.inventory.ledger.apply_delta', side_effect=StorageError('disk full')):
            response = self.client.post('/api/v1/sales/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)

    def test_list_sales(self):
        TestDataFactory.create_sale([(self.product_a, 1, '10.00')])
        TestDataFactory.create_sale([(self.product_b, 1, '5.00')], payment_method='upi')
        response = self.client.get('/api/v1/sales/', {'limit': 1})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual(response.data['total_pages'], 2)
        self.assertEqual(len(response.data['results']), 1)
        response = self.client.get('/api/v1/sales/', {'payment_method': 'upi'})
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['item_count'], 1)
        response = self.client.get('/api/v1/sales/', {'phone': '(987) 654-3210'})
        self.assertEqual(response.data['count'], 2)
        response = self.client.get('/api/v1/sales/', {'phone': '91234 56789'})
        self.assertEqual(response.data['count'], 0)

    def test_list_sales_invalid_filter(self):
        response = self.client.get('/api/v1/sales/', {'date_from': 'yesterday'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_sale_detail_and_by_invoice(self):
        sale = TestDataFactory.create_sale([(self.product_a, 1, '10.00')])
        response = self.client.get(f'/api/v1/sales/{sale.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['invoice_number'], sale.invoice_number)
        response = self.client.get(f'/api/v1/sales/invoice/{sale.invoice_number}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['id'], sale.id)

    def test_unknown_sale(self):
        self.assertEqual(self.client.get('/api/v1/sales/999999/').status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(self.client.get('/api/v1/sales/invoice/INV-NOPE/').status_code, status.HTTP_404_NOT_FOUND)
        data = self.payload([{'product': self.product_a.id, 'quantity': 1}])
        self.assertEqual(self.client.put('/api/v1/sales/999999/', data, format='json').status_code, status.HTTP_404_NOT_FOUND)

    def test_update_sale(self):
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00'), (self.product_b, 1, '5.00')])
        item_a = sale.items.get(product=self.product_a)
        data = self.payload([{'id': item_a.id, 'product': self.product_a.id, 'quantity': 5, 'unit_price': '10.00'}])
        response = self.client.put(f'/api/v1/sales/{sale.id}/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['items']), 1)
        self.assertEqual(response.data['total_amount'], '52.50')
        self.assertEqual(TestDataFactory.stock_of(self.product_a), 5)
        self.assertEqual(TestDataFactory.stock_of(self.product_b), 10)

    def test_update_sale_stale_original(self):
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')])
        item_a = sale.items.get()
        data = self.payload([{'id': item_a.id, 'product': self.product_a.id, 'quantity': 3, 'unit_price': '10.00'}])
        data['original_items'] = [{'id': item_a.id, 'product': self.product_a.id, 'quantity': 1, 'unit_price': '10.00'}]
        response = self.client.put(f'/api/v1/sales/{sale.id}/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error'], 'ConflictError')

    def test_update_sale_total_mismatch(self):
        sale = TestDataFactory.create_sale([(self.product_a, 2, '10.00')])
        item_a = sale.items.get()
        data = self.payload([{'id': item_a.id, 'product': self.product_a.id, 'quantity': 2, 'unit_price': '10.00'}])
        data['total_amount'] = '99.00'
        response = self.client.put(f'/api/v1/sales/{sale.id}/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_requires_authentication(self):
        self.client.logout()
        self.assertEqual(self.client.get('/api/v1/sales/').status_code, status.HTTP_401_UNAUTHORIZED)
