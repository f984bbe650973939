"""
Customer directory: find-or-create customers by phone number.

The phone number is the customer's identity. It is normalised before every
lookup and insert, and the UNIQUE constraint on ``customers.phone`` is what
settles two checkouts creating the same new customer at the same time.
"""
import logging
import re

from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import validate_email
from django.db import DatabaseError, IntegrityError, transaction

from retailpos.core import events
from retailpos.core.exceptions import ConflictError, StorageError, ValidationError
from retailpos.core.utils import create_audit_log
from .models import Customer

logger = logging.getLogger(__name__)

PHONE_FORMATTING = re.compile(r'[\s\-.()]')
PHONE_DIGITS = re.compile(r'\d{7,15}')


def normalize_phone(phone):
    """Strip formatting from a phone number.

    '+91 (98765) 43-210' -> '+919876543210'. A leading '+' is kept; what
    remains must be 7 to 15 digits.

    Raises:
        ValidationError: empty or malformed phone
    """
    raw = '' if phone is None else str(phone).strip()
    if not raw:
        raise ValidationError('Customer phone is required')
    prefix = '+' if raw.startswith('+') else ''
    digits = PHONE_FORMATTING.sub('', raw[len(prefix):])
    if not PHONE_DIGITS.fullmatch(digits):
        raise ValidationError(f"Invalid phone number {raw!r}: expected 7-15 digits", phone=raw)
    return prefix + digits


def find_customer_by_phone(phone):
    """Return the customer with this phone, or None (also for malformed input)"""
    try:
        normalized = normalize_phone(phone)
    except ValidationError:
        return None
    try:
        return Customer.objects.filter(phone=normalized).first()
    except DatabaseError as e:
        raise StorageError(f"Customer lookup failed: {e}") from e


def _clean_identity(name, phone, email):
    name = (name or '').strip()
    if not name:
        raise ValidationError('Customer name is required')
    phone = normalize_phone(phone)
    email = (email or '').strip()
    if email:
        try:
            validate_email(email)
        except DjangoValidationError:
            raise ValidationError(f"Invalid email address {email!r}", email=email)
    return name, phone, email


def _apply_changes(customer, name, email, user=None):
    """Write only the fields that differ; an empty email never clears the stored one"""
    changes = {}
    if name != customer.name:
        changes['name'] = {'old': customer.name, 'new': name}
        customer.name = name
    if email and email != customer.email:
        changes['email'] = {'old': customer.email, 'new': email}
        customer.email = email

    if not changes:
        return customer

    customer.save(update_fields=list(changes) + ['updated_at'])
    create_audit_log(
        action='customer_update',
        model_name='Customer',
        object_id=customer.id,
        object_reference=customer.phone,
        changes=changes,
        user=user,
    )
    events.notify_data_changed('parties', {events.CUSTOMERS}, customer_ids=[customer.id])
    logger.info(f"Customer {customer.id} updated: {', '.join(changes)}")
    return customer


def resolve_customer(name, phone, email='', *, user=None):
    """Find the customer for ``phone``, creating or updating it as needed.

    An existing customer gets its name (and email, when one is given)
    updated if they differ; when nothing differs no write is issued.

    Raises:
        ValidationError: missing name, malformed phone or email
        StorageError: the database failed
    """
    name, phone, email = _clean_identity(name, phone, email)

    try:
        customer = Customer.objects.filter(phone=phone).first()
        if customer is not None:
            return _apply_changes(customer, name, email, user)

        try:
            with transaction.atomic():
                customer = Customer.objects.create(name=name, phone=phone, email=email)
        except IntegrityError:
            # Another checkout inserted this phone first
            logger.warning(f"Customer insert for {phone} lost a race, using the existing row")
            customer = Customer.objects.filter(phone=phone).first()
            if customer is None:
                raise ConflictError(f"Customer with phone {phone} could not be created or found", phone=phone)
            return _apply_changes(customer, name, email, user)
    except DatabaseError as e:
        raise StorageError(f"Customer lookup failed for {phone}: {e}", phone=phone) from e

    create_audit_log(
        action='customer_create',
        model_name='Customer',
        object_id=customer.id,
        object_reference=customer.phone,
        changes={'name': name, 'phone': phone, 'email': email},
        user=user,
    )
    events.notify_data_changed('parties', {events.CUSTOMERS}, customer_ids=[customer.id])
    logger.info(f"Customer {customer.id} created for {phone}")
    return customer
