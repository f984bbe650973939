import django_filters
from retailpos.core.exceptions import ValidationError
from retailpos.parties.directory import normalize_phone
from .models import Sale


class SaleFilter(django_filters.FilterSet):
    """Filter for the sales list using django-filter"""

    invoice_number = django_filters.CharFilter(field_name='invoice_number', lookup_expr='icontains')
    customer = django_filters.NumberFilter(field_name='customer_id', lookup_expr='exact')
    phone = django_filters.CharFilter(method='filter_phone', label='Customer phone')
    payment_method = django_filters.ChoiceFilter(choices=Sale.PAYMENT_METHOD_CHOICES)
    date_from = django_filters.DateFilter(field_name='sale_date', lookup_expr='date__gte')
    date_to = django_filters.DateFilter(field_name='sale_date', lookup_expr='date__lte')

    class Meta:
        model = Sale
        fields = ['invoice_number', 'customer', 'phone', 'payment_method', 'date_from', 'date_to']

    def filter_phone(self, queryset, name, value):
        if not value:
            return queryset
        try:
            phone = normalize_phone(value)
        except ValidationError:
            return queryset.none()
        return queryset.filter(customer__phone=phone)
