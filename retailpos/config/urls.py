"""
URL configuration for the retailpos project.

All API endpoints live under /api/v1/; each app contributes its own urls.py.
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "RetailPOS Admin"
admin.site.site_title = "RetailPOS Admin Portal"
admin.site.index_title = "Sales, stock and customers"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('retailpos.core.urls')),
    path('api/v1/', include('retailpos.catalog.urls')),
    path('api/v1/', include('retailpos.inventory.urls')),
    path('api/v1/', include('retailpos.parties.urls')),
    path('api/v1/', include('retailpos.pos.urls')),
]
