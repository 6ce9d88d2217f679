"""Auth cookie codec.

The cookie value is ``b64(username) + "." + serial + "." + token``. The
username is unpadded url-safe base64 so that it never contains the
separator or needs quoting; serials and tokens are generated url-safe.
Decoding also accepts a padded username.
"""

from __future__ import annotations

import base64
import binascii
from typing import NamedTuple, Optional


class AuthCookie(NamedTuple):
    username: str
    serial: str
    token: str


def encode_auth_cookie(username: str, serial: str, token: str) -> str:
    encoded = base64.urlsafe_b64encode(username.encode("utf-8")).decode("ascii").rstrip("=")
    return f"{encoded}.{serial}.{token}"


def decode_auth_cookie(value: Optional[str]) -> Optional[AuthCookie]:
    """Parse a cookie value, returning ``None`` when it is malformed."""
    if not value:
        return None
    parts = value.split(".")
    if len(parts) != 3 or not all(parts):
        return None
    encoded, serial, token = parts
    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        raw = base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)
        username = raw.decode("utf-8")
    except (binascii.Error, UnicodeError):
        return None
    if not username:
        return None
    return AuthCookie(username, serial, token)


__all__ = ["AuthCookie", "encode_auth_cookie", "decode_auth_cookie"]
