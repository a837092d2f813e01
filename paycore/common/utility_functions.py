import hashlib
import hmac
from typing import Any, Dict, Optional


def merge_metadata(current: Optional[Dict[str, Any]], *updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Non-destructive union of metadata bags, last write wins per key.
    Always returns a new dict so SQLAlchemy sees the JSON column change.
    """
    merged: Dict[str, Any] = dict(current or {})
    for update in updates:
        if update:
            merged.update(update)
    return merged


def mask_token(token_id: Optional[str]) -> str:
    """Only the last four characters of a provider token ever reach the logs."""
    if not token_id or len(token_id) <= 4:
        return "****"
    return f"****{token_id[-4:]}"


def compute_signature(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def signatures_match(payload: str, signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    return hmac.compare_digest(compute_signature(payload, secret), candidate.lower())
