"""Click request signatures.

The provider signs every callback with
``md5(click_trans_id + service_id + SECRET_KEY + merchant_trans_id
[+ merchant_prepare_id] + amount + action + sign_time)``.
The merchant_prepare_id part is only present on Complete.
"""
import hashlib
import hmac
from typing import Iterable, Optional


def sign(fields: Iterable[object]) -> str:
    payload = "".join("" if f is None else str(f) for f in fields)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify(fields: Iterable[object], candidate: Optional[str]) -> bool:
    if not candidate:
        return False
    expected = sign(fields).encode("ascii")
    return hmac.compare_digest(expected, candidate.strip().lower().encode("utf-8"))


def prepare_fields(request, secret_key: str) -> list:
    return [
        request.click_trans_id,
        request.service_id,
        secret_key,
        request.merchant_trans_id,
        request.amount,
        request.action,
        request.sign_time,
    ]


def complete_fields(request, secret_key: str) -> list:
    return [
        request.click_trans_id,
        request.service_id,
        secret_key,
        request.merchant_trans_id,
        request.merchant_prepare_id,
        request.amount,
        request.action,
        request.sign_time,
    ]
