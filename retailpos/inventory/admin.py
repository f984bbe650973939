from django.contrib import admin
from .models import Stock, StockMovement


@admin.register(Stock)
class StockAdmin(admin.ModelAdmin):
    list_display = ['product', 'quantity', 'updated_at']
    search_fields = ['product__name', 'product__reference_number']
    ordering = ['product__name']
    # Quantities change only through the stock ledger
    readonly_fields = ['product', 'quantity', 'updated_at']

    def has_add_permission(self, request):
        return False


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ['product', 'delta', 'reason', 'sale', 'sale_item_id', 'created_by', 'created_at']
    list_filter = ['reason', 'created_at']
    search_fields = ['product__name', 'sale__invoice_number']
    ordering = ['-created_at']
    readonly_fields = ['product', 'delta', 'reason', 'sale', 'sale_item_id', 'notes', 'created_by', 'created_at']

    def has_add_permission(self, request):
        return False
