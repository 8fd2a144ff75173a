"""
Shared-secret authentication for internal triggers.
"""

import hmac
from typing import Optional


def verify_bearer_secret(auth_header: Optional[str], expected: str) -> bool:
    """Timing-safe check of an 'Authorization: Bearer <secret>' header."""
    if not auth_header or not auth_header.startswith("Bearer "):
        return False
    provided = auth_header[len("Bearer "):]
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
