"""
Job Utilities

Shared helpers for job handlers: timestamps, chunking, settled fan-out and
standardized error payloads.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utc_now().isoformat()


def iso_minutes_ago(minutes: float, now: Optional[datetime] = None) -> str:
    """ISO timestamp `minutes` before now, for lt() comparisons in queries."""
    return ((now or utc_now()) - timedelta(minutes=minutes)).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """Split a list into chunks."""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


@dataclass
class SettledResult:
    """Outcome of one call in a settled fan-out."""
    item: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(
    items: List[T],
    call: Callable[[T], Awaitable[R]],
    concurrency: int = 3,
) -> List[SettledResult]:
    """
    Run `call` over `items` in windows of `concurrency`, capturing each
    outcome independently. A failing item never aborts its siblings.
    Results are returned in input order.
    """
    results: List[SettledResult] = []
    for window in chunk_list(items, max(1, concurrency)):
        outcomes = await asyncio.gather(
            *(call(item) for item in window),
            return_exceptions=True
        )
        for item, outcome in zip(window, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                results.append(SettledResult(item=item, error=outcome))
            else:
                results.append(SettledResult(item=item, value=outcome))
    return results


def create_error_response(
    error_type: str,
    message: str,
    hint: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {
        "detail": message,
        "error_type": error_type,
        "hint": hint or get_default_hint(error_type),
        "details": details,
        "timestamp": now_iso()
    }


def get_default_hint(error_type: str) -> str:
    """Get default user-friendly hint for an error type."""
    hints = {
        "validation_error": "Please check your input data and try again.",
        "not_found": "The requested job or item could not be found.",
        "state_conflict": "The job is not in a state that allows this action. Refresh and try again.",
        "concurrent_update": "The job was updated by another request. Please retry.",
        "unauthorized": "Missing or invalid credentials.",
        "external_service_error": "An upstream provider failed. You can resume the job later.",
    }
    return hints.get(error_type, "An error occurred. Please try again or contact support.")
