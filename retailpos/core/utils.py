"""Audit logging, runtime settings and money helpers"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings
from django.db import transaction

from .models import AuditLog, Setting

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

TAX_RATE_SETTING_KEY = 'tax_rate'


def to_money(value):
    """Round a Decimal-compatible value half-up to cents"""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def get_setting(key, default=None):
    """Return the value of a Setting row, or ``default`` when it doesn't exist"""
    value = Setting.objects.filter(key=key).values_list('value', flat=True).first()
    return default if value is None else value


def get_tax_rate():
    """Tax rate as a fraction of the subtotal (Decimal('0.05') for 5%).

    The 'tax_rate' Setting row wins over settings.SALES_TAX_RATE.
    """
    fallback = Decimal(str(settings.SALES_TAX_RATE))
    raw = get_setting(TAX_RATE_SETTING_KEY)
    if raw is None:
        return fallback
    try:
        rate = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        logger.warning(f"Ignoring malformed tax_rate setting {raw!r}, using {fallback}")
        return fallback
    if rate < 0:
        logger.warning(f"Ignoring negative tax_rate setting {raw!r}, using {fallback}")
        return fallback
    return rate


def create_audit_log(action=None, model_name=None, object_id=None, changes=None,
                     user=None, object_reference=None):
    """
    Create an audit log entry

    Args:
        action: Action type (sale_create, sale_update, stock_adjust, ...)
        model_name: Name of the model being acted upon
        object_id: ID of the object
        changes: Dictionary of changes made
        user: Acting user, if any
        object_reference: Reference identifier (e.g., invoice number, phone)

    Failures are logged and never propagate to the caller.
    """
    if not action or not model_name or object_id is None:
        logger.warning(f"Audit log creation skipped: missing required fields (action={action}, model_name={model_name}, object_id={object_id})")
        return None
    try:
        # Savepoint so a failed insert does not break an enclosing transaction
        with transaction.atomic():
            return AuditLog.objects.create(
                user=user if user is not None and user.is_authenticated else None,
                action=action,
                model_name=model_name,
                object_id=str(object_id),
                object_reference=object_reference,
                changes=changes or {},
            )
    except Exception as e:
        logger.error(f"Failed to create audit log: {str(e)}")
        return None
