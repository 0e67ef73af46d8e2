"""Request-scoped middleware: correlation ids and API payload limits.

``RequestIdMiddleware`` gives every request an identifier, read from the
incoming ``X-Request-Id`` header or generated as a UUIDv4. The id is
stored on the request, in ``REQUEST_ID_CTX`` for code that has no access
to the request (logging filters, the Paystack client), and echoed back in
the ``X-Request-ID`` response header. The caller's customer id, when the
upstream authentication layer provides one, is kept in ``CUSTOMER_ID_CTX``
for log correlation.

``ApiSizeLimitMiddleware`` rejects oversized bodies on ``/api/`` before
they reach a view.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
CUSTOMER_ID_CTX = contextvars.ContextVar("customer_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header, in ``request.META`` casing.
        CUSTOMER_HEADER (str): Customer id header set by the auth layer.
        RESPONSE_HEADER (str): Header added to responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    CUSTOMER_HEADER = "HTTP_X_CUSTOMER_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)
        request._customer_id_token = CUSTOMER_ID_CTX.set(request.META.get(self.CUSTOMER_HEADER) or "-")

    def process_response(self, request, response):
        """Add the ``X-Request-ID`` header and reset the context variables."""
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        for ctx, attr in ((REQUEST_ID_CTX, "_request_id_token"), (CUSTOMER_ID_CTX, "_customer_id_token")):
            token = getattr(request, attr, None)
            if token is not None:
                ctx.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
