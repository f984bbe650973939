from django.urls import path
from .views import sale_list_create, sale_detail, sale_by_invoice

urlpatterns = [
    path('sales/', sale_list_create, name='sale-list-create'),
    path('sales/<int:pk>/', sale_detail, name='sale-detail'),
    path('sales/invoice/<str:invoice_number>/', sale_by_invoice, name='sale-by-invoice'),
]
