"""
Test suite for the inventory module
Tests: stock ledger updates, guarded decrements, movements, adjustments API and check_stock_sync
"""
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db.models import Sum
from django.test import TestCase
from rest_framework import status

from retailpos.core.exceptions import InsufficientStockError, StorageError, ValidationError
from retailpos.core.models import AuditLog
from retailpos.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from retailpos.catalog.models import Product
from retailpos.inventory import ledger
from retailpos.inventory.models import Stock, StockMovement


class StockLedgerTests(TestCase):
    """Test apply_delta and the availability checks"""

    def setUp(self):
        self.product = TestDataFactory.create_product(stock=10)

    def test_open_stock_records_opening_movement(self):
        """New products start with one opening movement"""
        movement = StockMovement.objects.get(product=self.product)
        self.assertEqual(movement.delta, 10)
        self.assertEqual(movement.reason, StockMovement.REASON_OPENING)
        self.assertEqual(TestDataFactory.stock_of(self.product), 10)

    def test_open_stock_without_quantity(self):
        """Zero opening stock creates the row but no movement"""
        product = TestDataFactory.create_product(stock=0)
        self.assertEqual(TestDataFactory.stock_of(product), 0)
        self.assertFalse(StockMovement.objects.filter(product=product).exists())

    def test_open_stock_rejects_negative(self):
        product = Product.objects.create(name='Negative')
        with self.assertRaises(ValidationError):
            ledger.open_stock(product, -1)

    def test_apply_delta_decrement(self):
        movement = ledger.apply_delta(self.product.id, -3, reason=StockMovement.REASON_SALE)
        self.assertEqual(TestDataFactory.stock_of(self.product), 7)
        self.assertEqual(movement.delta, -3)

    def test_apply_delta_does_not_use_stale_objects(self):
        """The update is done by the database, so an outdated in-memory row changes nothing"""
        stale = Stock.objects.get(product=self.product)
        ledger.apply_delta(self.product.id, -4, reason=StockMovement.REASON_SALE)
        ledger.apply_delta(self.product.id, 2, reason=StockMovement.REASON_ADJUSTMENT)
        self.assertEqual(stale.quantity, 10)
        self.assertEqual(TestDataFactory.stock_of(self.product), 8)

    def test_apply_delta_zero_is_noop(self):
        self.assertIsNone(ledger.apply_delta(self.product.id, 0, reason=StockMovement.REASON_SALE))
        self.assertEqual(StockMovement.objects.filter(product=self.product).count(), 1)

    def test_decrement_below_zero_is_refused(self):
        """Guarded update: stock never goes negative"""
        with self.assertRaises(InsufficientStockError) as ctx:
            ledger.apply_delta(self.product.id, -11, reason=StockMovement.REASON_SALE)
        self.assertEqual(ctx.exception.shortages, {self.product.id: {'requested': 11, 'available': 10}})
        self.assertEqual(TestDataFactory.stock_of(self.product), 10)
        self.assertEqual(StockMovement.objects.filter(product=self.product).count(), 1)

    def test_decrement_to_exactly_zero(self):
        ledger.apply_delta(self.product.id, -10, reason=StockMovement.REASON_SALE)
        self.assertEqual(TestDataFactory.stock_of(self.product), 0)

    def test_missing_stock_row_is_storage_error(self):
        product = Product.objects.create(name='No stock row')
        with self.assertRaises(StorageError):
            ledger.apply_delta(product.id, 1, reason=StockMovement.REASON_ADJUSTMENT)

    def test_check_availability_lists_every_shortage(self):
        other = TestDataFactory.create_product(stock=1)
        with self.assertRaises(InsufficientStockError) as ctx:
            ledger.check_availability({self.product.id: -12, other.id: -2})
        self.assertEqual(set(ctx.exception.shortages), {self.product.id, other.id})

    def test_check_availability_ignores_increments(self):
        ledger.check_availability({self.product.id: 50, 999999: 3})

    def test_movements_sum_to_quantity(self):
        ledger.apply_delta(self.product.id, -3, reason=StockMovement.REASON_SALE)
        ledger.apply_delta(self.product.id, 5, reason=StockMovement.REASON_ADJUSTMENT)
        ledger.apply_delta(self.product.id, -1, reason=StockMovement.REASON_SALE_ITEM_ADDED)
        total = StockMovement.objects.filter(product=self.product).aggregate(total=Sum('delta'))['total']
        self.assertEqual(total, TestDataFactory.stock_of(self.product))
        self.assertEqual(total, 11)


class StockAdjustmentTests(TestCase):
    """Test adjust_stock and its side effects"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.product = TestDataFactory.create_product(stock=5)

    def test_adjust_stock_writes_audit_log(self):
        movement = ledger.adjust_stock(self.product.id, 3, user=self.user, notes='Delivery')
        self.assertEqual(movement.reason, StockMovement.REASON_ADJUSTMENT)
        self.assertEqual(movement.created_by, self.user)
        log = AuditLog.objects.get(action='stock_adjust')
        self.assertEqual(log.changes['delta'], 3)
        self.assertEqual(log.object_id, str(self.product.id))

    def test_adjust_stock_rejects_zero(self):
        with self.assertRaises(ValidationError):
            ledger.adjust_stock(self.product.id, 0)

    def test_adjust_stock_cannot_go_negative(self):
        with self.assertRaises(InsufficientStockError):
            ledger.adjust_stock(self.product.id, -6)
        self.assertFalse(AuditLog.objects.filter(action='stock_adjust').exists())


class StockAPITests(TestCase):
    """Test stock API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.product = TestDataFactory.create_product(name='Widget', stock=4)

    def test_stock_list(self):
        response = self.client.get('/api/v1/stock/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['product_name'], 'Widget')
        self.assertEqual(response.data[0]['quantity'], 4)

    def test_stock_list_below_threshold(self):
        TestDataFactory.create_product(stock=50)
        response = self.client.get('/api/v1/stock/', {'below': 10})
        self.assertEqual([row['product'] for row in response.data], [self.product.id])

    def test_adjust_stock(self):
        response = self.client.post(f'/api/v1/stock/{self.product.id}/adjust/', {'delta': 6, 'notes': 'Restock'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['stock']['quantity'], 10)
        self.assertEqual(response.data['movement']['delta'], 6)

    def test_adjust_stock_insufficient(self):
        response = self.client.post(f'/api/v1/stock/{self.product.id}/adjust/', {'delta': -5}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'InsufficientStockError')
        self.assertEqual(TestDataFactory.stock_of(self.product), 4)

    def test_adjust_stock_zero_delta(self):
        response = self.client.post(f'/api/v1/stock/{self.product.id}/adjust/', {'delta': 0}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_movements_history(self):
        ledger.adjust_stock(self.product.id, -1)
        response = self.client.get(f'/api/v1/stock/{self.product.id}/movements/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([m['delta'] for m in response.data], [-1, 4])

    def test_requires_authentication(self):
        self.client.logout()
        response = self.client.get('/api/v1/stock/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class CheckStockSyncCommandTests(TestCase):
    """Test the check_stock_sync management command"""

    def setUp(self):
        self.product = TestDataFactory.create_product(stock=7)

    def run_command(self, *args):
        out = StringIO()
        call_command('check_stock_sync', *args, stdout=out)
        return out.getvalue()

    def test_in_sync(self):
        TestDataFactory.create_sale([(self.product, 2, '5.00')])
        output = self.run_command()
        self.assertIn('No discrepancies found', output)

    def test_detects_quantity_drift(self):
        # Bypass the ledger to simulate drift
        Stock.objects.filter(product=self.product).update(quantity=3)
        output = self.run_command()
        self.assertIn('Difference: -4', output)

    def test_detects_sale_without_movements(self):
        sale = TestDataFactory.create_sale([(self.product, 2, '5.00')])
        StockMovement.objects.filter(sale=sale).delete()
        Stock.objects.filter(product=self.product).update(quantity=7)
        output = self.run_command()
        self.assertIn(f'Sale {sale.id}, product {self.product.id}', output)

    def test_fail_on_discrepancy(self):
        Stock.objects.filter(product=self.product).update(quantity=1)
        with self.assertRaises(CommandError):
            self.run_command('--fail-on-discrepancy')
