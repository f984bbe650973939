"""
Test suite for the catalog module
Tests: product creation with opening stock, filtering, list caching and deletion rules
"""
from decimal import Decimal

from django.core.cache import cache
from django.test import TestCase
from rest_framework import status

from retailpos.core import events
from retailpos.core.models import AuditLog
from retailpos.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from retailpos.catalog.models import Product
from retailpos.inventory.models import Stock, StockMovement


class ProductModelTests(TestCase):

    def test_product_str(self):
        product = Product.objects.create(name='Cable', reference_number='CAB-1')
        self.assertEqual(str(product), 'Cable (CAB-1)')

    def test_product_str_without_reference(self):
        product = Product.objects.create(name='Cable')
        self.assertEqual(str(product), 'Cable (NO-REF)')


class ProductAPITests(TestCase):
    """Test product API endpoints"""

    def setUp(self):
        cache.clear()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)

    def test_create_product_with_opening_stock(self):
        data = {'name': 'Charger', 'reference_number': 'CHG-01', 'price': '499.00', 'opening_stock': 12}
        response = self.client.post('/api/v1/products/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['stock_quantity'], 12)
        self.assertNotIn('opening_stock', response.data)

        product = Product.objects.get(reference_number='CHG-01')
        self.assertEqual(Stock.objects.get(product=product).quantity, 12)
        movement = StockMovement.objects.get(product=product)
        self.assertEqual(movement.reason, StockMovement.REASON_OPENING)
        self.assertEqual(movement.created_by, self.user)
        self.assertTrue(AuditLog.objects.filter(action='create', model_name='Product').exists())

    def test_create_product_without_stock(self):
        response = self.client.post('/api/v1/products/', {'name': 'Case', 'price': '50.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['stock_quantity'], 0)
        self.assertIsNone(response.data['reference_number'])

    def test_create_product_negative_price(self):
        response = self.client.post('/api/v1/products/', {'name': 'Case', 'price': '-1.00'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_create_product_negative_opening_stock(self):
        response = self.client.post('/api/v1/products/', {'name': 'Case', 'opening_stock': -2}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(Product.objects.exists())

    def test_create_product_notifies_after_commit(self):
        received = []

        def receiver(sender, resources, **kwargs):
            received.append(resources)

        events.data_changed.connect(receiver)
        try:
            with self.captureOnCommitCallbacks(execute=True):
                self.client.post('/api/v1/products/', {'name': 'Case', 'opening_stock': 1}, format='json')
        finally:
            events.data_changed.disconnect(receiver)
        self.assertEqual(received, [frozenset({events.PRODUCTS, events.STOCK})])

    def test_list_products_search(self):
        TestDataFactory.create_product(name='Oppo A33 Frame')
        TestDataFactory.create_product(name='Samsung Charger')
        response = self.client.get('/api/v1/products/', {'search': 'frame a33'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([p['name'] for p in response.data], ['Oppo A33 Frame'])

    def test_list_products_stock_filters(self):
        in_stock = TestDataFactory.create_product(stock=3)
        empty = TestDataFactory.create_product(stock=0)
        response = self.client.get('/api/v1/products/', {'in_stock': 'true'})
        self.assertEqual([p['id'] for p in response.data], [in_stock.id])
        response = self.client.get('/api/v1/products/', {'out_of_stock': 'true'})
        self.assertEqual([p['id'] for p in response.data], [empty.id])

    def test_list_cache_is_invalidated_by_product_changes(self):
        """A cached list is refreshed once a product write commits"""
        TestDataFactory.create_product(name='First')
        response = self.client.get('/api/v1/products/')
        self.assertEqual(len(response.data), 1)

        with self.captureOnCommitCallbacks(execute=True):
            self.client.post('/api/v1/products/', {'name': 'Second'}, format='json')
        response = self.client.get('/api/v1/products/')
        self.assertEqual(len(response.data), 2)

    def test_update_product(self):
        product = TestDataFactory.create_product(price=Decimal('10.00'), stock=5)
        response = self.client.patch(f'/api/v1/products/{product.id}/', {'price': '12.50', 'opening_stock': 99}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['price'], '12.50')
        # Stock is not touched by product edits
        self.assertEqual(TestDataFactory.stock_of(product), 5)

    def test_delete_unsold_product(self):
        product = TestDataFactory.create_product(stock=5)
        response = self.client.delete(f'/api/v1/products/{product.id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertFalse(Stock.objects.filter(product_id=product.pk).exists())

    def test_delete_sold_product_is_refused(self):
        product = TestDataFactory.create_product(stock=5)
        TestDataFactory.create_sale([(product, 1, '10.00')])
        response = self.client.delete(f'/api/v1/products/{product.id}/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertTrue(Product.objects.filter(pk=product.pk).exists())

    def test_get_missing_product(self):
        response = self.client.get('/api/v1/products/999999/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
