from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """Staff user operating the till"""
    phone = models.CharField(max_length=20, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'


class Setting(models.Model):
    """Runtime settings (e.g. tax_rate)"""
    key = models.CharField(max_length=100, unique=True)
    value = models.TextField()
    description = models.TextField(blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key

    class Meta:
        db_table = 'settings'


class AuditLog(models.Model):
    """Audit log for sale, stock and customer writes"""
    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('delete', 'Delete'),
        ('sale_create', 'Sale Created'),
        ('sale_update', 'Sale Updated'),
        ('customer_create', 'Customer Created'),
        ('customer_update', 'Customer Updated'),
        ('stock_adjust', 'Stock Adjustment'),
    ]

    user = models.ForeignKey('core.User', on_delete=models.SET_NULL, null=True, blank=True, related_name='audit_logs')
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100)
    object_reference = models.CharField(max_length=255, blank=True, null=True, help_text="Reference identifier (e.g., invoice number, phone)")
    changes = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['-created_at'], name='audit_logs_created_a5f0b1_idx'),
            models.Index(fields=['action'], name='audit_logs_action_7c2e4d_idx'),
            models.Index(fields=['object_reference'], name='audit_logs_object__3b9a1e_idx'),
        ]
