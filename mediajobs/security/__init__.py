"""CDN token signing."""

from .signing import (
    SignedToken,
    build_signed_url,
    encode_asset_path,
    parse_private_reference,
    private_reference,
    sign,
    verify_token,
)

__all__ = [
    "SignedToken",
    "build_signed_url",
    "encode_asset_path",
    "parse_private_reference",
    "private_reference",
    "sign",
    "verify_token",
]
