"""Idempotency records for the checkout endpoint.

A client may send an ``Idempotency-Key`` header with a checkout. The
first request creates a record and, once the checkout finishes, stores
its response; retries with the same payload get that response back
without issuing a new order number or payment session. Reusing the key
with a different payload is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    Keys are sorted and separators compact so equal payloads hash equally.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(key: str, scope: str | None = None) -> str:
    """Prefix ``key`` with the caller it belongs to, if any."""
    return f"{scope}:{key}" if scope else key


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict, scope: str | None = None):
    """Get-or-create an idempotency record for ``key``.

    Records are kept per ``scope`` (the authenticated customer), so two
    customers sending the same key and body never share a response.

    The create runs in a nested savepoint so an ``IntegrityError`` only
    rolls back that block; the existing record is then read with
    ``SELECT ... FOR UPDATE``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when the record was created by this call.

    Raises:
        IdempotencyConflict: The key exists with a different payload.
    """
    stored = scoped_key(key, scope)
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=stored, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=stored)
        if rec.request_hash != h:
            raise IdempotencyConflict(
                "Idempotency-Key was already used with a different payload", details={"key": key}
            )
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_number: str | None = None):
    """Store the final response of an idempotent checkout."""
    rec.response_status = status_code
    rec.response_body = body
    if order_number is not None:
        rec.order_number = order_number
    rec.save(update_fields=["response_status", "response_body", "order_number"])
