from rest_framework import serializers
from .models import Sale, SaleItem


class SaleItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source='product.name', read_only=True)
    product_reference_number = serializers.CharField(source='product.reference_number', read_only=True)
    available_stock = serializers.SerializerMethodField()

    class Meta:
        model = SaleItem
        fields = [
            'id', 'product', 'product_name', 'product_reference_number',
            'quantity', 'unit_price', 'total_price', 'available_stock',
        ]
        read_only_fields = fields

    def get_available_stock(self, obj):
        """Current on-hand quantity, so an editor knows how many more can be added"""
        stock = getattr(obj.product, 'stock', None)
        return stock.quantity if stock is not None else 0


class SaleSerializer(serializers.ModelSerializer):
    items = SaleItemSerializer(many=True, read_only=True)
    created_by_username = serializers.CharField(source='created_by.username', read_only=True, default=None)

    class Meta:
        model = Sale
        fields = [
            'id', 'invoice_number', 'customer', 'customer_name', 'customer_phone', 'customer_email',
            'payment_method', 'subtotal', 'tax_amount', 'total_amount', 'sale_date',
            'items', 'created_by', 'created_by_username', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class SaleListSerializer(serializers.ModelSerializer):
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Sale
        fields = [
            'id', 'invoice_number', 'customer', 'customer_name', 'customer_phone',
            'payment_method', 'total_amount', 'sale_date', 'item_count',
        ]
        read_only_fields = fields

    def get_item_count(self, obj):
        return len(obj.items.all())


class SaleItemInputSerializer(serializers.Serializer):
    """One line item of a create/update payload; ``id`` marks an existing row"""
    id = serializers.IntegerField(required=False, allow_null=True)
    product = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False, allow_null=True)


class SaleWriteSerializer(serializers.Serializer):
    """Payload of POST /sales/ and PUT /sales/<id>/"""
    customer_name = serializers.CharField(max_length=200)
    customer_phone = serializers.CharField(max_length=30)
    customer_email = serializers.EmailField(required=False, allow_blank=True, default='')
    payment_method = serializers.ChoiceField(choices=Sale.PAYMENT_METHOD_CHOICES, required=False)
    sale_date = serializers.DateTimeField(required=False)
    # Only honoured on update, where they are checked against the items
    tax_amount = serializers.DecimalField(max_digits=10, decimal_places=2, required=False, allow_null=True)
    total_amount = serializers.DecimalField(max_digits=10, decimal_places=2, required=False, allow_null=True)
    items = SaleItemInputSerializer(many=True, allow_empty=False)
    original_items = SaleItemInputSerializer(many=True, required=False)

    def to_internal_value(self, data):
        # Payment methods are accepted in any case (e.g. 'CASH')
        if hasattr(data, 'get') and isinstance(data.get('payment_method'), str):
            data = data.copy()
            data['payment_method'] = data['payment_method'].lower()
        return super().to_internal_value(data)

    def split(self):
        """(header, items, original_items) as the sale services expect them"""
        data = dict(self.validated_data)
        items = [dict(item) for item in data.pop('items')]
        original_items = data.pop('original_items', None)
        if original_items is not None:
            original_items = [dict(item) for item in original_items]
        return data, items, original_items
