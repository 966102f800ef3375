from __future__ import annotations

import hashlib
import hmac
from typing import Mapping

from backend.app.models import Provider


class SignatureVerificationError(Exception):
    pass


# Header names each provider may carry its HMAC-SHA256 digest in, checked in order.
SIGNATURE_HEADERS: dict[Provider, tuple[str, ...]] = {
    Provider.cloud_api: ("x-hub-signature-256",),
    Provider.gateway: ("x-webhook-signature", "x-gateway-signature"),
}


def sign_body(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    provider: Provider, headers: Mapping[str, str], raw_body: bytes, secret: str
) -> None:
    """Check the raw delivery bytes against the provider digest; an empty secret skips the check."""
    if not secret:
        return
    provided = next(
        (headers[name].strip() for name in SIGNATURE_HEADERS[provider] if headers.get(name)),
        None,
    )
    if not provided:
        raise SignatureVerificationError(f"missing {provider.value} signature header")

    _, _, digest = provided.rpartition("sha256=")
    expected = sign_body(raw_body, secret).split("=", 1)[1]
    if not hmac.compare_digest(expected, digest.strip().lower()):
        raise SignatureVerificationError(f"invalid {provider.value} signature")
