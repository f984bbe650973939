"""
Cache invalidation driven by data_changed notifications
"""
from django.dispatch import receiver
import logging

from . import events
from .cache_utils import bump_generation

logger = logging.getLogger(__name__)

# Stock levels are shown in the product list, so stock changes invalidate it too
RESOURCE_DEPENDENCIES = {
    events.PRODUCTS: {events.PRODUCTS},
    events.STOCK: {events.PRODUCTS},
    events.CUSTOMERS: {events.CUSTOMERS},
    events.SALES: set(),
}


@receiver(events.data_changed)
def invalidate_caches(sender, resources, **kwargs):
    """Bump the generation of every cached resource affected by the change"""
    stale = set()
    for resource in resources:
        stale |= RESOURCE_DEPENDENCIES.get(resource, set())
    for resource in sorted(stale):
        try:
            bump_generation(resource)
            logger.info(f"Invalidated {resource} cache (changed: {sorted(resources)})")
        except Exception as e:
            logger.warning(f"Could not invalidate {resource} cache: {e}")
