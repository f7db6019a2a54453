from .base import *  # noqa

DEBUG = True

# Local memory cache unless Redis is configured. The web process and the Celery
# worker only share loop state and popup messages through Redis.
if not USE_REDIS_CACHE:  # noqa: F405
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }
