from django.db import models
from django.utils import timezone
from decimal import Decimal
from retailpos.catalog.models import Product
from retailpos.parties.models import Customer


class Sale(models.Model):
    """Sale header: one checkout transaction"""
    PAYMENT_METHOD_CHOICES = [
        ('cash', 'Cash'),
        ('card', 'Card'),
        ('upi', 'UPI'),
        ('online', 'Online Payment'),
    ]

    invoice_number = models.CharField(max_length=100, unique=True, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name='sales')
    # Customer details as they were at the last write of this sale
    customer_name = models.CharField(max_length=200)
    customer_phone = models.CharField(max_length=20)
    customer_email = models.EmailField(blank=True)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default='cash')
    subtotal = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    tax_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    total_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    sale_date = models.DateTimeField(default=timezone.now, db_index=True)
    created_by = models.ForeignKey('core.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='sales')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.invoice_number

    def get_items_total(self):
        """Sum of line totals as currently persisted"""
        return sum((item.total_price for item in self.items.all()), Decimal('0.00'))

    class Meta:
        db_table = 'sales'
        ordering = ['-sale_date', '-id']


class SaleItem(models.Model):
    """Sale line item; unit_price is the price agreed when the item was added"""
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name='sale_items')
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    total_price = models.DecimalField(max_digits=10, decimal_places=2)

    def __str__(self):
        return f"{self.sale.invoice_number} - {self.product.name} x {self.quantity}"

    class Meta:
        db_table = 'sale_items'
        ordering = ['id']
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name='sale_item_quantity_positive'),
        ]
