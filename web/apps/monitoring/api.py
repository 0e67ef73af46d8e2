import logging

from django.core.cache import caches
from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger("orders.health")


def _db_ok() -> bool:
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        return True
    except Exception:
        logger.warning("health check: database unavailable", exc_info=True)
        return False


def _cache_ok() -> bool:
    # the staging store and the order sequence both live in this cache
    try:
        cache = caches["default"]
        cache.set("health:ping", "1", timeout=5)
        return cache.get("health:ping") == "1"
    except Exception:
        logger.warning("health check: cache unavailable", exc_info=True)
        return False


def health_view(_request):
    db_ok = _db_ok()
    cache_ok = _cache_ok()

    ok = db_ok and cache_ok
    code = 200 if ok else 503
    return JsonResponse(
        {"ok": ok, "components": {"db": {"ok": db_ok}, "cache": {"ok": cache_ok}}},
        status=code,
    )
