"""
Test suite for the customer directory
Tests: phone normalisation, find-or-create, minimal updates, race recovery and the customer API
"""
from unittest import mock

from django.core.cache import cache
from django.db import IntegrityError, OperationalError, connection
from django.test import TestCase
from django.test.utils import CaptureQueriesContext
from rest_framework import status

from retailpos.core.exceptions import ConflictError, StorageError, ValidationError
from retailpos.core.models import AuditLog
from retailpos.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from retailpos.parties.directory import find_customer_by_phone, normalize_phone, resolve_customer
from retailpos.parties.models import Customer


class NormalizePhoneTests(TestCase):

    def test_strips_formatting(self):
        self.assertEqual(normalize_phone(' (987) 654-3210 '), '9876543210')
        self.assertEqual(normalize_phone('987.654.3210'), '9876543210')

    def test_keeps_leading_plus(self):
        self.assertEqual(normalize_phone('+91 98765 43210'), '+919876543210')

    def test_rejects_empty(self):
        for value in (None, '', '   '):
            with self.assertRaises(ValidationError):
                normalize_phone(value)

    def test_rejects_letters_and_bad_lengths(self):
        for value in ('98765abc10', '123456', '1234567890123456', '91+9876543210', '++919876543210'):
            with self.assertRaises(ValidationError):
                normalize_phone(value)

    def test_length_bounds(self):
        self.assertEqual(normalize_phone('1234567'), '1234567')
        self.assertEqual(normalize_phone('123456789012345'), '123456789012345')


class ResolveCustomerTests(TestCase):
    """Test find-or-create by phone"""

    def test_creates_new_customer(self):
        customer = resolve_customer('Asha Rao', '98765-43210', 'asha@example.com')
        self.assertEqual(customer.phone, '9876543210')
        self.assertEqual(Customer.objects.count(), 1)
        self.assertTrue(AuditLog.objects.filter(action='customer_create', object_reference='9876543210').exists())

    def test_same_phone_different_format_matches(self):
        first = resolve_customer('Asha Rao', '9876543210', '')
        second = resolve_customer('Asha Rao', '(987) 654 3210', '')
        self.assertEqual(first.id, second.id)
        self.assertEqual(Customer.objects.count(), 1)

    def test_unchanged_customer_issues_no_write(self):
        customer = TestDataFactory.create_customer(name='Asha Rao', phone='9876543210', email='asha@example.com')
        with CaptureQueriesContext(connection) as ctx:
            resolved = resolve_customer('Asha Rao', '9876543210', 'asha@example.com')
        self.assertEqual(resolved.id, customer.id)
        self.assertEqual(len(ctx.captured_queries), 1)
        self.assertTrue(ctx.captured_queries[0]['sql'].lstrip().upper().startswith('SELECT'))

    def test_empty_email_does_not_clear_existing(self):
        TestDataFactory.create_customer(name='Asha Rao', phone='9876543210', email='asha@example.com')
        with CaptureQueriesContext(connection) as ctx:
            customer = resolve_customer('Asha Rao', '9876543210', '')
        self.assertEqual(customer.email, 'asha@example.com')
        self.assertEqual(len(ctx.captured_queries), 1)

    def test_changed_name_updates_only_name(self):
        customer = TestDataFactory.create_customer(name='Asha', phone='9876543210', email='asha@example.com')
        with CaptureQueriesContext(connection) as ctx:
            resolve_customer('Asha Rao', '9876543210', 'asha@example.com')
        updates = [q['sql'] for q in ctx.captured_queries if q['sql'].lstrip().upper().startswith('UPDATE')]
        self.assertEqual(len(updates), 1)
        self.assertIn('"name"', updates[0])
        self.assertIn('"updated_at"', updates[0])
        self.assertNotIn('"email"', updates[0])
        customer.refresh_from_db()
        self.assertEqual(customer.name, 'Asha Rao')
        log = AuditLog.objects.get(action='customer_update')
        self.assertEqual(log.changes, {'name': {'old': 'Asha', 'new': 'Asha Rao'}})

    def test_changed_email_is_updated(self):
        customer = TestDataFactory.create_customer(name='Asha', phone='9876543210', email='old@example.com')
        resolve_customer('Asha', '9876543210', 'new@example.com')
        customer.refresh_from_db()
        self.assertEqual(customer.email, 'new@example.com')

    def test_missing_name(self):
        with self.assertRaises(ValidationError):
            resolve_customer('  ', '9876543210', '')
        self.assertEqual(Customer.objects.count(), 0)

    def test_invalid_email(self):
        with self.assertRaises(ValidationError):
            resolve_customer('Asha', '9876543210', 'not-an-email')

    def test_insert_race_falls_back_to_existing_row(self):
        """A concurrent insert of the same phone is resolved by re-reading"""
        winner = TestDataFactory.create_customer(name='Asha', phone='9876543210', email='')
        real_filter = Customer.objects.filter
        calls = {'count': 0}

        def first_lookup_misses(*args, **kwargs):
            calls['count'] += 1
            if calls['count'] == 1:
                return real_filter(pk__in=[])
            return real_filter(*args, **kwargs)

        with mock.patch.object(Customer.objects, 'filter', side_effect=first_lookup_misses):
            customer = resolve_customer('Asha Rao', '9876543210', '')

        self.assertEqual(customer.id, winner.id)
        self.assertEqual(Customer.objects.count(), 1)
        winner.refresh_from_db()
        self.assertEqual(winner.name, 'Asha Rao')

    def test_unrecoverable_insert_conflict(self):
        """Insert fails on the phone constraint but the row cannot be read back"""
        empty = [Customer.objects.none(), Customer.objects.none()]
        with mock.patch.object(Customer.objects, 'create', side_effect=IntegrityError('duplicate')):
            with mock.patch.object(Customer.objects, 'filter', side_effect=empty):
                with self.assertRaises(ConflictError):
                    resolve_customer('Asha', '9876543210', '')

    def test_lookup_failure_is_storage_error(self):
        with mock.patch.object(Customer.objects, 'filter', side_effect=OperationalError('db down')):
            with self.assertRaises(StorageError):
                resolve_customer('Asha', '9876543210', '')


class FindCustomerTests(TestCase):

    def test_find_by_formatted_phone(self):
        customer = TestDataFactory.create_customer(phone='9876543210')
        self.assertEqual(find_customer_by_phone('987-654-3210'), customer)

    def test_unknown_or_malformed(self):
        self.assertIsNone(find_customer_by_phone('9876543210'))
        self.assertIsNone(find_customer_by_phone('12'))


class CustomerAPITests(TestCase):
    """Test customer API endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        cache.clear()
        self.client.authenticate_user(self.user)
        self.customer = TestDataFactory.create_customer(name='Asha Rao', phone='9876543210')

    def test_list_customers(self):
        response = self.client.get('/api/v1/customers/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['phone'], '9876543210')

    def test_search_customers(self):
        TestDataFactory.create_customer(name='Someone Else')
        response = self.client.get('/api/v1/customers/', {'search': 'asha'})
        self.assertEqual([c['id'] for c in response.data], [self.customer.id])

    def test_lookup(self):
        response = self.client.get('/api/v1/customers/lookup/', {'phone': '98765 43210'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'Asha Rao')

    def test_lookup_not_found(self):
        response = self.client.get('/api/v1/customers/lookup/', {'phone': '9000000000'})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_lookup_requires_phone(self):
        response = self.client.get('/api/v1/customers/lookup/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
