from django.urls import path
from .views import customer_list, customer_lookup

urlpatterns = [
    path('customers/', customer_list, name='customer-list'),
    path('customers/lookup/', customer_lookup, name='customer-lookup'),
]
