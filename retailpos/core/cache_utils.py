"""
Caching utilities for list endpoints.

Cache keys embed a per-resource generation number. Invalidating a resource
bumps its generation, which orphans every key built from the old one; this
works the same on the local-memory and Redis backends without key scans.
"""
from django.core.cache import cache
from functools import wraps
import hashlib
import logging

logger = logging.getLogger(__name__)

# Cache TTLs (in seconds)
PRODUCTS_LIST_CACHE_TTL = 120  # 2 minutes
CUSTOMERS_LIST_CACHE_TTL = 300  # 5 minutes

GENERATION_KEY_PREFIX = 'gen:'


def get_generation(resource):
    """Current generation number of a resource (starts at 1)"""
    key = f"{GENERATION_KEY_PREFIX}{resource}"
    generation = cache.get(key)
    if generation is None:
        cache.add(key, 1, timeout=None)
        generation = cache.get(key, 1)
    return generation


def bump_generation(resource):
    """Invalidate every cached entry built for ``resource``"""
    key = f"{GENERATION_KEY_PREFIX}{resource}"
    try:
        return cache.incr(key)
    except ValueError:
        # Key missing (evicted or never set)
        cache.set(key, 2, timeout=None)
        return 2


def make_cache_key(resource, *args, **kwargs):
    """Generate a cache key for ``resource`` from arguments"""
    key_data = f"{resource}:{args}:{sorted(kwargs.items())}"
    key_hash = hashlib.md5(key_data.encode()).hexdigest()
    return f"{resource}:{get_generation(resource)}:{key_hash}"


def cached_query(resource, cache_ttl=60):
    """
    Decorator caching the return value of a read-only query function.

    Usage:
        @cached_query('products', cache_ttl=PRODUCTS_LIST_CACHE_TTL)
        def product_list_data(search, include_inactive):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            cache_key = make_cache_key(resource, func.__name__, *args, **kwargs)

            cached_data = cache.get(cache_key)
            if cached_data is not None:
                logger.debug(f"Cache HIT for {resource}: {cache_key}")
                return cached_data

            logger.debug(f"Cache MISS for {resource}: {cache_key}")
            result = func(*args, **kwargs)
            cache.set(cache_key, result, cache_ttl)
            return result
        return wrapper
    return decorator
