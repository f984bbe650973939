"""
Test suite for the core module
Tests: tax rate resolution, audit logging, error payloads, change notifications, cache generations and the settings/audit APIs
"""
from decimal import Decimal
from unittest import mock

from django.core.cache import cache
from django.db import DatabaseError
from django.test import TestCase, override_settings
from rest_framework import status

from retailpos.core import events
from retailpos.core.cache_utils import bump_generation, cached_query, get_generation, make_cache_key
from retailpos.core.exceptions import InsufficientStockError, PartialSaleError, SaleNotFoundError, ValidationError
from retailpos.core.models import AuditLog, Setting
from retailpos.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from retailpos.core.utils import create_audit_log, get_tax_rate, to_money


class MoneyTests(TestCase):

    def test_to_money_rounds_half_up(self):
        self.assertEqual(to_money(Decimal('0.4995')), Decimal('0.50'))
        self.assertEqual(to_money(Decimal('0.005')), Decimal('0.01'))
        self.assertEqual(to_money('12'), Decimal('12.00'))


class TaxRateTests(TestCase):

    @override_settings(SALES_TAX_RATE='0.05')
    def test_default_rate(self):
        self.assertEqual(get_tax_rate(), Decimal('0.05'))

    def test_setting_row_wins(self):
        Setting.objects.create(key='tax_rate', value=' 0.12 ')
        self.assertEqual(get_tax_rate(), Decimal('0.12'))

    @override_settings(SALES_TAX_RATE='0.05')
    def test_malformed_setting_falls_back(self):
        Setting.objects.create(key='tax_rate', value='12%')
        with self.assertLogs('retailpos.core.utils', level='WARNING'):
            self.assertEqual(get_tax_rate(), Decimal('0.05'))

    @override_settings(SALES_TAX_RATE='0.05')
    def test_negative_setting_falls_back(self):
        Setting.objects.create(key='tax_rate', value='-0.1')
        self.assertEqual(get_tax_rate(), Decimal('0.05'))


class AuditLogHelperTests(TestCase):

    def test_creates_entry(self):
        user = TestDataFactory.create_user()
        log = create_audit_log(action='sale_create', model_name='Sale', object_id=7,
                               changes={'total_amount': '10.50'}, user=user, object_reference='INV-1')
        self.assertEqual(log.object_id, '7')
        self.assertEqual(log.user, user)

    def test_missing_fields_skip_entry(self):
        self.assertIsNone(create_audit_log(action='sale_create', model_name='Sale'))
        self.assertFalse(AuditLog.objects.exists())

    def test_failure_is_logged_not_raised(self):
        with mock.patch.object(AuditLog.objects, 'create', side_effect=DatabaseError('audit table locked')):
            with self.assertLogs('retailpos.core.utils', level='ERROR'):
                self.assertIsNone(create_audit_log(action='update', model_name='Product', object_id=1))


class ErrorPayloadTests(TestCase):

    def test_as_dict(self):
        error = ValidationError('Customer name is required')
        self.assertEqual(error.as_dict(), {'error': 'ValidationError', 'message': 'Customer name is required'})
        self.assertEqual(error.status_code, 400)

    def test_insufficient_stock_details(self):
        error = InsufficientStockError({3: {'requested': 5, 'available': 2}})
        self.assertIn('requested 5, available 2', error.message)
        self.assertEqual(error.as_dict()['details'], {'shortages': {'3': {'requested': 5, 'available': 2}}})
        self.assertIsInstance(error, ValidationError)

    def test_status_codes(self):
        self.assertEqual(SaleNotFoundError().status_code, 404)
        self.assertEqual(PartialSaleError([], sale_id=1).status_code, 500)


class DataChangedTests(TestCase):

    def setUp(self):
        self.received = []
        events.data_changed.connect(self.receiver)
        self.addCleanup(events.data_changed.disconnect, self.receiver)

    def receiver(self, sender, resources, signal=None, **kwargs):
        self.received.append((sender, resources, kwargs))

    def test_sent_only_after_commit(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            events.notify_data_changed('pos', [events.SALES], sale_id=4)
            self.assertEqual(self.received, [])
        self.assertEqual(len(callbacks), 1)
        self.assertEqual(self.received, [('pos', frozenset({events.SALES}), {'sale_id': 4})])

    def test_failing_receiver_does_not_break_others(self):
        def broken(sender, **kwargs):
            raise RuntimeError('listener bug')

        events.data_changed.connect(broken)
        self.addCleanup(events.data_changed.disconnect, broken)
        with self.captureOnCommitCallbacks(execute=True):
            events.notify_data_changed('pos', [events.STOCK])
        self.assertEqual(len(self.received), 1)


class CacheGenerationTests(TestCase):

    def setUp(self):
        cache.clear()

    def test_bump_changes_keys(self):
        before = make_cache_key('products', 'list', search='a')
        self.assertEqual(get_generation('products'), 1)
        bump_generation('products')
        self.assertEqual(get_generation('products'), 2)
        self.assertNotEqual(make_cache_key('products', 'list', search='a'), before)

    def test_bump_after_eviction(self):
        cache.delete('gen:customers')
        self.assertEqual(bump_generation('customers'), 2)

    def test_cached_query(self):
        calls = []

        @cached_query('customers', cache_ttl=60)
        def load(term):
            calls.append(term)
            return [term]

        self.assertEqual(load('x'), ['x'])
        self.assertEqual(load('x'), ['x'])
        self.assertEqual(len(calls), 1)
        bump_generation('customers')
        load('x')
        self.assertEqual(len(calls), 2)

    def test_sale_commit_invalidates_product_lists(self):
        product = TestDataFactory.create_product(stock=5)
        generation = get_generation('products')
        with self.captureOnCommitCallbacks(execute=True):
            TestDataFactory.create_sale([(product, 1, '10.00')])
        self.assertGreater(get_generation('products'), generation)


class SettingAPITests(TestCase):
    """Test settings API endpoints"""

    def setUp(self):
        self.admin = TestDataFactory.create_user(is_staff=True, is_superuser=True)
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.admin)

    def test_create_tax_rate(self):
        response = self.client.post('/api/v1/settings/', {'key': 'tax_rate', 'value': '0.18'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(get_tax_rate(), Decimal('0.18'))

    def test_invalid_tax_rate(self):
        for value in ('abc', '-0.1', '1.5'):
            with self.subTest(value=value):
                response = self.client.post('/api/v1/settings/', {'key': 'tax_rate', 'value': value}, format='json')
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(Setting.objects.exists())

    def test_patch_tax_rate_validated(self):
        setting = Setting.objects.create(key='tax_rate', value='0.05')
        response = self.client.patch(f'/api/v1/settings/{setting.id}/', {'value': 'lots'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_non_staff_forbidden(self):
        self.client.authenticate_user(TestDataFactory.create_user())
        response = self.client.get('/api/v1/settings/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class AuditLogAPITests(TestCase):

    def setUp(self):
        self.staff = TestDataFactory.create_user(is_staff=True)
        self.clerk = TestDataFactory.create_user()
        create_audit_log(action='stock_adjust', model_name='Stock', object_id=1, user=self.staff)
        create_audit_log(action='sale_create', model_name='Sale', object_id=2, user=self.clerk, object_reference='INV-X')
        self.client = AuthenticatedAPIClient()

    def test_staff_sees_all(self):
        self.client.authenticate_user(self.staff)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(len(response.data), 2)

    def test_clerk_sees_own_entries(self):
        self.client.authenticate_user(self.clerk)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual([log['action'] for log in response.data], ['sale_create'])

    def test_filter_by_reference(self):
        self.client.authenticate_user(self.staff)
        response = self.client.get('/api/v1/audit-logs/', {'reference': 'INV-X'})
        self.assertEqual(len(response.data), 1)


class AuthAPITests(TestCase):

    def test_login_returns_tokens(self):
        TestDataFactory.create_user(username='cashier', password='s3cret-pass')
        response = self.client.post('/api/v1/auth/login/', {'username': 'cashier', 'password': 's3cret-pass'}, content_type='application/json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.json())

    def test_login_rejects_bad_password(self):
        TestDataFactory.create_user(username='cashier', password='s3cret-pass')
        response = self.client.post('/api/v1/auth/login/', {'username': 'cashier', 'password': 'nope'}, content_type='application/json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
