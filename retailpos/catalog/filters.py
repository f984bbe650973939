import django_filters
from django.db.models import Q
from .models import Product


class ProductFilter(django_filters.FilterSet):
    """Filter for Product model using django-filter"""

    # Searches name, reference number and description
    search = django_filters.CharFilter(method='filter_search', label='Search')
    active = django_filters.CharFilter(method='filter_active', label='Active')

    # Stock status filters
    in_stock = django_filters.CharFilter(method='filter_in_stock', label='In Stock')
    out_of_stock = django_filters.CharFilter(method='filter_out_of_stock', label='Out of Stock')
    low_stock = django_filters.NumberFilter(field_name='stock__quantity', lookup_expr='lte', label='Stock at or below')

    class Meta:
        model = Product
        fields = ['search', 'active', 'in_stock', 'out_of_stock', 'low_stock']

    def filter_search(self, queryset, name, value):
        """Every word must appear in the name, reference number or description"""
        if not value:
            return queryset
        for word in value.split():
            queryset = queryset.filter(
                Q(name__icontains=word) |
                Q(reference_number__icontains=word) |
                Q(description__icontains=word)
            )
        return queryset

    def filter_active(self, queryset, name, value):
        if value is None or value == '':
            return queryset
        return queryset.filter(is_active=value.lower() in ('true', '1', 'yes'))

    def filter_in_stock(self, queryset, name, value):
        if value and value.lower() in ('true', '1', 'yes'):
            return queryset.filter(stock__quantity__gt=0)
        return queryset

    def filter_out_of_stock(self, queryset, name, value):
        if value and value.lower() in ('true', '1', 'yes'):
            return queryset.filter(Q(stock__quantity__lte=0) | Q(stock__isnull=True))
        return queryset
