from __future__ import annotations

import hashlib

PIN_LENGTH = 4
_HASH_PREFIX_HEX_CHARS = 8


def derive_session_pin(session_token: str) -> str:
    """Derive the 4-digit transaction PIN bound to a session credential.

    The token must be passed exactly as issued: any stripping or re-encoding
    between login and verification yields a different PIN.
    """
    digest = hashlib.sha256(session_token.encode("utf-8", "surrogatepass")).hexdigest()
    value = int(digest[:_HASH_PREFIX_HEX_CHARS], 16) % (10 ** PIN_LENGTH)
    return f"{value:0{PIN_LENGTH}d}"
