from datetime import datetime, timezone
from typing import Any, Dict, Optional


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Razorpay epoch seconds -> naive UTC datetime (None/0 stays None)"""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def merge_metadata(current: Optional[Dict[str, Any]], **updates: Any) -> Dict[str, Any]:
    """Return a new metadata dict so JSON column changes are always detected"""
    merged = dict(current or {})
    merged.update(updates)
    return merged
