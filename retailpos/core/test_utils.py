"""
Test utilities and factories for creating test data
"""
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from retailpos.catalog.models import Product
from retailpos.inventory import ledger
from retailpos.inventory.models import Stock
from retailpos.parties.models import Customer
from retailpos.pos.services import create_sale
from decimal import Decimal
import random
import string

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def random_phone():
        return f'9{random.randint(100000000, 999999999)}'

    @staticmethod
    def create_user(username=None, email=None, password='testpass123', is_staff=False, is_superuser=False):
        """Create a test user"""
        if not username:
            username = f'testuser_{TestDataFactory.random_string(6)}'
        if not email:
            email = f'{username}@test.com'
        return User.objects.create_user(
            username=username,
            email=email,
            password=password,
            is_staff=is_staff,
            is_superuser=is_superuser
        )

    @staticmethod
    def create_product(name=None, reference_number=None, price=None, stock=0):
        """Create a test product together with its stock row"""
        if not name:
            name = f'Product_{TestDataFactory.random_string(6)}'
        if not reference_number:
            reference_number = f'REF_{TestDataFactory.random_string(8)}'
        if price is None:
            price = Decimal('10.00')
        product = Product.objects.create(
            name=name,
            reference_number=reference_number,
            price=price
        )
        ledger.open_stock(product, stock)
        return product

    @staticmethod
    def create_customer(name=None, phone=None, email=None):
        """Create a test customer"""
        if not name:
            name = f'Customer_{TestDataFactory.random_string(6)}'
        if not phone:
            phone = TestDataFactory.random_phone()
        if email is None:
            email = f'{name.lower()}@test.com'
        return Customer.objects.create(
            name=name,
            phone=phone,
            email=email
        )

    @staticmethod
    def sale_header(name='Asha Rao', phone='9876543210', email='', payment_method='cash', **extra):
        """Header dict for create_sale / update_sale"""
        header = {
            'customer_name': name,
            'customer_phone': phone,
            'customer_email': email,
            'payment_method': payment_method,
        }
        header.update(extra)
        return header

    @staticmethod
    def create_sale(items, user=None, **header):
        """Create a sale through the sales service.

        ``items`` is a list of (product, quantity, unit_price) tuples.
        """
        line_items = [
            {'product': product.id, 'quantity': quantity, 'unit_price': unit_price}
            for product, quantity, unit_price in items
        ]
        return create_sale(TestDataFactory.sale_header(**header), line_items, user=user)

    @staticmethod
    def stock_of(product):
        """Current stock quantity of a product, read from the database"""
        return Stock.objects.get(product=product).quantity


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
