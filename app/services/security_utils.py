from __future__ import annotations

import hashlib
import hmac

SIGNATURE_ALGORITHM = "sha256"
SIGNATURE_PREFIX = f"{SIGNATURE_ALGORITHM}="


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256,
    ).hexdigest()


def build_signature_header_value(payload: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{sign_payload(payload, secret)}"


def verify_payload_signature(payload: bytes, signature: str, secret: str) -> bool:
    provided_signature = signature.strip()
    if not provided_signature:
        return False
    if provided_signature.startswith(SIGNATURE_PREFIX):
        provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()

    computed_signature = sign_payload(payload, secret)
    return hmac.compare_digest(computed_signature, provided_signature)
