from django.db import models
from retailpos.catalog.models import Product


class Stock(models.Model):
    """On-hand quantity per product.

    Only changed through retailpos.inventory.ledger, with an atomic
    ``quantity = quantity + delta`` update.
    """
    product = models.OneToOneField(Product, on_delete=models.CASCADE, related_name='stock')
    quantity = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.product.name}: {self.quantity}"

    class Meta:
        db_table = 'stock'
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name='stock_quantity_non_negative'),
        ]


class StockMovement(models.Model):
    """One applied stock delta; the sum per product equals Stock.quantity"""
    REASON_OPENING = 'opening'
    REASON_SALE = 'sale'
    REASON_SALE_ITEM_ADDED = 'sale_item_added'
    REASON_SALE_ITEM_CHANGED = 'sale_item_changed'
    REASON_SALE_ITEM_REMOVED = 'sale_item_removed'
    REASON_ADJUSTMENT = 'adjustment'

    REASON_CHOICES = [
        (REASON_OPENING, 'Opening Stock'),
        (REASON_SALE, 'Sold'),
        (REASON_SALE_ITEM_ADDED, 'Sale Edit: Item Added'),
        (REASON_SALE_ITEM_CHANGED, 'Sale Edit: Quantity Changed'),
        (REASON_SALE_ITEM_REMOVED, 'Sale Edit: Item Removed'),
        (REASON_ADJUSTMENT, 'Manual Adjustment'),
    ]

    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='stock_movements')
    delta = models.IntegerField()
    reason = models.CharField(max_length=30, choices=REASON_CHOICES)
    sale = models.ForeignKey('pos.Sale', on_delete=models.SET_NULL, null=True, blank=True, related_name='stock_movements')
    # Plain id: the line item may be deleted by a later edit
    sale_item_id = models.BigIntegerField(null=True, blank=True)
    notes = models.CharField(max_length=255, blank=True)
    created_by = models.ForeignKey('core.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='stock_movements')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.product_id} {self.delta:+d} ({self.reason})"

    class Meta:
        db_table = 'stock_movements'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['product', 'created_at'], name='idx_stockmove_product_created'),
        ]
