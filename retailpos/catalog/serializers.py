from rest_framework import serializers
from .models import Product


class ProductSerializer(serializers.ModelSerializer):
    stock_quantity = serializers.SerializerMethodField()
    # Only used on create: quantity put on the shelf with the new product
    opening_stock = serializers.IntegerField(write_only=True, required=False, default=0, min_value=0)

    class Meta:
        model = Product
        fields = [
            'id', 'name', 'reference_number', 'price', 'description', 'is_active',
            'stock_quantity', 'opening_stock', 'created_at', 'updated_at',
        ]
        read_only_fields = ['created_at', 'updated_at']

    def get_stock_quantity(self, obj):
        stock = getattr(obj, 'stock', None)
        return stock.quantity if stock is not None else 0

    def validate_price(self, value):
        if value < 0:
            raise serializers.ValidationError('Price cannot be negative')
        return value

    def validate_reference_number(self, value):
        # Blank reference numbers are stored as NULL so they don't collide
        if not value or not value.strip():
            return None
        return value.strip()

    def create(self, validated_data):
        validated_data.pop('opening_stock', None)
        return super().create(validated_data)

    def update(self, instance, validated_data):
        # Stock changes go through stock adjustments, not product edits
        validated_data.pop('opening_stock', None)
        return super().update(instance, validated_data)
