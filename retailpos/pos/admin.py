from django.contrib import admin
from .models import Sale, SaleItem


class SaleItemInline(admin.TabularInline):
    model = SaleItem
    extra = 0
    can_delete = False
    readonly_fields = ['product', 'quantity', 'unit_price', 'total_price']


@admin.register(Sale)
class SaleAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'customer_name', 'customer_phone', 'payment_method', 'total_amount', 'sale_date', 'created_by']
    list_filter = ['payment_method', 'sale_date']
    search_fields = ['invoice_number', 'customer_name', 'customer_phone']
    ordering = ['-sale_date']
    date_hierarchy = 'sale_date'
    inlines = [SaleItemInline]
    # Sales are edited through the sales API so stock stays in step
    readonly_fields = [
        'invoice_number', 'customer', 'customer_name', 'customer_phone', 'customer_email',
        'payment_method', 'subtotal', 'tax_amount', 'total_amount', 'sale_date',
        'created_by', 'created_at', 'updated_at',
    ]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
