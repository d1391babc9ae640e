# spreadbot/signing.py
import hashlib
import hmac
from typing import Any, Dict


def canonical_query(params: Dict[str, Any]) -> str:
    """
    Joins params as key=value pairs in insertion order.
    The venue signs exactly the string it receives, so order must be preserved.
    """
    return "&".join(f"{k}={v}" for k, v in params.items() if v is not None)


def sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_query(params: Dict[str, Any], secret: str) -> str:
    """Returns the full signed query string: `<canonical>&signature=<hex hmac-sha256>`."""
    query = canonical_query(params)
    return f"{query}&signature={sign(query, secret)}"
