from __future__ import annotations

import base64
import hashlib
import hmac
import re

from fastapi import Header, HTTPException, status

from cart_recovery.config import settings

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


def normalize_shop_domain(shop: str) -> str:
    normalized = (shop or "").strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise ValueError("shop must be a valid *.myshopify.com domain")
    return normalized


class WebhookSignatureVerifier:
    """Checks the base64 HMAC-SHA256 a webhook sender attaches to the raw request body.

    The digest must be computed over the exact bytes received. Parsing and
    re-serializing the JSON first changes key order and whitespace, so it is
    not equivalent.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Webhook signing secret must not be empty")
        self._secret = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self._secret, body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify(self, *, body: bytes, supplied_hmac: str | None) -> bool:
        if not supplied_hmac or not isinstance(body, (bytes, bytearray)):
            return False
        try:
            supplied = supplied_hmac.strip().encode("ascii")
        except (AttributeError, UnicodeEncodeError):
            return False
        expected = self.sign(bytes(body)).encode("ascii")
        return hmac.compare_digest(expected, supplied)


def require_internal_api_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    token = authorization[7:].strip()
    if not hmac.compare_digest(
        token.encode("utf-8"), settings.CART_RECOVERY_INTERNAL_API_TOKEN.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API token",
        )
