from django.db import models


class Customer(models.Model):
    """Customers, identified by their normalised phone number"""
    name = models.CharField(max_length=200)
    # Stored normalised (see retailpos.parties.directory.normalize_phone)
    phone = models.CharField(max_length=20, unique=True)
    email = models.EmailField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.phone})"

    class Meta:
        db_table = 'customers'
        ordering = ['-created_at']
