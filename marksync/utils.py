import json
import uuid
import hashlib
import socket
from datetime import datetime, timezone
from typing import Any, Optional

# Seconds between 1601-01-01 (Chromium epoch) and 1970-01-01
CHROMIUM_EPOCH_DELTA = 11644473600


def now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    dt = ms_to_datetime(value)
    return dt.isoformat() if dt else None


def chromium_to_ms(timestamp) -> Optional[int]:
    """
    Convert a Chromium timestamp (microseconds since 1601-01-01) to epoch ms.

    Returns None for empty or unparsable values.
    """
    if not timestamp:
        return None
    try:
        return int(int(timestamp) / 1000 - CHROMIUM_EPOCH_DELTA * 1000)
    except (TypeError, ValueError):
        return None


def ms_to_chromium(value: int) -> str:
    """Convert epoch ms to a Chromium timestamp string."""
    return str((int(value) + CHROMIUM_EPOCH_DELTA * 1000) * 1000)


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal data hashes equal."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_json(data: Any) -> str:
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()


def generate_device_id() -> str:
    """Generate an opaque, stable-once-persisted device identifier."""
    host = socket.gethostname().split(".")[0] or "device"
    return f"{host}-{uuid.uuid4().hex[:12]}"
