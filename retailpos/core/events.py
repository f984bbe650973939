"""
"Data changed" notifications.

Writes in the sales engine announce which resources they touched; listeners
(cache invalidation, presentation layers) receive the signal only after the
surrounding transaction commits and re-read whatever they need.

    from retailpos.core.events import data_changed

    @receiver(data_changed)
    def on_change(sender, resources, **kwargs):
        ...
"""
import logging

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

SALES = 'sales'
PRODUCTS = 'products'
STOCK = 'stock'
CUSTOMERS = 'customers'

# Sent with: resources (frozenset of the names above), plus free-form keyword details
data_changed = Signal()


def notify_data_changed(sender, resources, **details):
    """Send ``data_changed`` once the current transaction commits.

    Outside a transaction the signal is sent immediately.
    """
    resources = frozenset(resources)

    def _send():
        logger.debug(f"data_changed from {sender}: {sorted(resources)}")
        responses = data_changed.send_robust(sender=sender, resources=resources, **details)
        for receiver, result in responses:
            if isinstance(result, Exception):
                logger.error(f"data_changed receiver {receiver!r} failed: {result}")

    transaction.on_commit(_send)
