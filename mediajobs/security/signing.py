"""HMAC tokens for private assets served through the CDN.

The CDN edge recomputes the signature over the request path exactly as it
arrives on the wire, i.e. percent-encoded. Tokens must therefore be signed
over the encoded path, never over the raw file name.
"""

import base64
import hashlib
import hmac
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote

from mediajobs.errors import TokenSigningError

# Characters left alone by JavaScript's encodeURIComponent
_UNRESERVED = "-_.!~*'()"
_PRIVATE_PREFIX = "private:"
_TOKEN_PATTERN = re.compile(r"^(\d+)\.([A-Za-z0-9_-]+)$")


@dataclass(frozen=True)
class SignedToken:
    """A signed token and the epoch second it stops being valid."""
    token: str
    expires: int


def encode_asset_path(file_name: str) -> str:
    """Return the canonical wire path for a stored file name.

    The whole name is encoded as a single path component, so a '/' inside
    the name becomes '%2F'.

    Example:
        encode_asset_path("a b.mp4") == "/a%20b.mp4"
    """
    clean = file_name[1:] if file_name.startswith("/") else file_name
    if not clean:
        raise TokenSigningError("Cannot encode an empty file name")
    return "/" + quote(clean, safe=_UNRESERVED)


def is_canonical_path(encoded_path: str) -> bool:
    """Check that ``encoded_path`` is exactly what encode_asset_path produces."""
    if not encoded_path.startswith("/") or len(encoded_path) < 2:
        return False
    return encode_asset_path(unquote(encoded_path[1:])) == encoded_path


def _signature(message: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def sign(
    encoded_path: str,
    secret: str,
    ttl: int,
    now: Optional[float] = None,
) -> SignedToken:
    """Sign ``encoded_path`` for ``ttl`` seconds.

    Args:
        encoded_path: Path in canonical encoded form (see encode_asset_path)
        secret: Shared CDN signing secret
        ttl: Validity window in seconds
        now: Current epoch time, defaults to time.time()

    Returns:
        SignedToken whose token has the form '<expires>.<signature>'

    Raises:
        TokenSigningError: If the secret is empty, ttl is not positive or
            the path is not in canonical encoded form
    """
    if not secret:
        raise TokenSigningError("Signing secret is empty")
    if ttl <= 0:
        raise TokenSigningError(f"Token ttl must be positive, got {ttl}")
    if not is_canonical_path(encoded_path):
        raise TokenSigningError(
            f"Path is not in canonical encoded form: {encoded_path!r}"
        )

    issued = time.time() if now is None else now
    expires = int(issued) + int(ttl)
    signature = _signature(f"{expires}.{encoded_path}", secret)
    return SignedToken(token=f"{expires}.{signature}", expires=expires)


def verify_token(
    token: str,
    encoded_path: str,
    secret: str,
    now: Optional[float] = None,
) -> bool:
    """Edge-side check of a token against the requested path.

    Mirrors what the CDN does: the path is compared byte for byte, so any
    difference in encoding invalidates the token.
    """
    match = _TOKEN_PATTERN.match(token or "")
    if not match or not secret:
        return False

    expires = int(match.group(1))
    current = time.time() if now is None else now
    if current >= expires:
        return False

    expected = _signature(f"{expires}.{encoded_path}", secret)
    return hmac.compare_digest(expected, match.group(2))


def build_signed_url(
    base_url: str,
    encoded_path: str,
    secret: str,
    ttl: int,
    now: Optional[float] = None,
) -> str:
    """Build '<base><encoded path>?token=<token>&expires=<expires>'."""
    signed = sign(encoded_path, secret, ttl, now=now)
    return (
        f"{base_url.rstrip('/')}{encoded_path}"
        f"?token={signed.token}&expires={signed.expires}"
    )


def private_reference(file_name: str) -> str:
    """Return the stored pointer for an artifact uploaded under ``file_name``."""
    clean = file_name[1:] if file_name.startswith("/") else file_name
    return f"{_PRIVATE_PREFIX}/{clean}"


def is_private_reference(value: str) -> bool:
    return value.startswith(_PRIVATE_PREFIX)


def parse_private_reference(value: str) -> str:
    """Extract the file name from a private storage reference.

    Accepts 'private:<fileId>:/<name>' as written by the upload flow and
    'private:/<name>' as written by the workers.

    Raises:
        TokenSigningError: If the value is not a well-formed private reference
    """
    if not is_private_reference(value):
        raise TokenSigningError(f"Not a private reference: {value!r}")

    remainder = value[len(_PRIVATE_PREFIX):]
    if not remainder.startswith("/"):
        _, sep, remainder = remainder.partition(":")
        if not sep:
            raise TokenSigningError(f"Malformed private reference: {value!r}")

    file_name = remainder.lstrip("/")
    if not file_name:
        raise TokenSigningError(f"Private reference has no file name: {value!r}")
    return file_name
