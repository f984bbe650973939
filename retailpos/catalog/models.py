from django.db import models
from decimal import Decimal


class Product(models.Model):
    """Product master"""
    name = models.CharField(max_length=200, db_index=True)
    reference_number = models.CharField(max_length=100, unique=True, blank=True, null=True, db_index=True)
    # Default price offered for new sale lines; existing lines keep their own unit price
    price = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.reference_number or 'NO-REF'})"

    class Meta:
        db_table = 'products'
        ordering = ['-created_at']
