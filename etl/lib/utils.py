"""
Utility functions for the attribution ETL.
Coercion of CRM property values, batching, retry logic and atomic file writes.

Usage:
    from etl.lib.utils import parse_timestamp, safe_decimal, batched, retry_on_exception
"""
import json
import os
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from etl.lib.logger import setup_logger

logger = setup_logger(__name__)


# ---------------------------------------------------------------------------
# Coercion (data-shape surprises become safe defaults, never crashes)
# ---------------------------------------------------------------------------

def norm_str(val: Any) -> Optional[str]:
    """Trim a value to a string; empty and missing become None. Lists are comma-joined."""
    if val is None:
        return None
    if isinstance(val, (list, tuple)):
        val = ",".join(str(v) for v in val)
    s = str(val).strip()
    return s or None


def parse_timestamp(val: Any) -> Optional[datetime]:
    """
    Parse a HubSpot timestamp into a timezone-aware UTC datetime.

    Accepts epoch milliseconds (int, float or digit string), epoch seconds,
    ISO-8601 strings with or without a trailing Z, and datetimes.
    Returns None for anything unparseable.
    """
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        try:
            ts = val / 1000 if val > 1e11 else val
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    s = str(val).strip()
    if s.lstrip("-").isdigit():
        return parse_timestamp(int(s))
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for a datetime, None passthrough."""
    return dt.isoformat() if dt else None


def safe_decimal(val: Any) -> Decimal:
    """Currency amount as Decimal; missing or non-numeric becomes 0."""
    if val is None or val == "" or isinstance(val, bool):
        return Decimal("0")
    try:
        d = Decimal(str(val).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not d.is_finite():
        return Decimal("0")
    return d


def safe_int(val: Any, default: int = 0) -> int:
    """Convert to int (truncating), falling back to default."""
    if val is None or val == "" or isinstance(val, bool):
        return default
    try:
        return int(float(val))
    except (ValueError, TypeError, OverflowError):
        return default


def safe_div(numerator: float, denominator: float) -> float:
    """Rate with a guarded denominator: 0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return numerator / max(denominator, 1)


def split_csv(raw: Optional[str]) -> List[str]:
    """Split a comma-separated setting into trimmed non-empty items."""
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


# ---------------------------------------------------------------------------
# Batching and retries
# ---------------------------------------------------------------------------

def batched(items: Iterable, size: int) -> Iterator[list]:
    """Yield successive lists of at most `size` items."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    batch = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def retry_on_exception(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Decorator that retries a function on specified exceptions.

    Args:
        max_attempts: Maximum number of attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        exceptions: Tuple of exception types to catch.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            func.__name__, max_attempts, e,
                        )
                        raise
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                        func.__name__, attempt, max_attempts, e, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff
        return wrapper
    return decorator


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)
        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True
    except OSError as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            temp_path.unlink()
        return False
