"""Logging filter enriching records with request context.

Reads the ContextVars set by ``RequestIdMiddleware`` so formatters can
reference ``%(request_id)s`` and ``%(customer_id)s`` on every record,
including records emitted outside a request (placeholder ``-``).
"""

from logging import Filter, LogRecord

from .middleware import CUSTOMER_ID_CTX, REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``customer_id`` attributes to log records."""

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "customer_id"):
            record.customer_id = CUSTOMER_ID_CTX.get()
        return True
