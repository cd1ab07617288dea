"""Explicit outcome of a best-effort external call.

Reputation, profile, retrieval and anomaly lookups never raise into the
scoring path. Call sites wrap them with :func:`attempt` and unwrap the
resulting :class:`Lookup` to a documented default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Tuple, Type, TypeVar

from thrag.errors import ThragError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Lookup(Generic[T]):
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value


def attempt(
    fn: Callable[..., T],
    *args: object,
    expected: Tuple[Type[BaseException], ...] = (ThragError,),
    label: str = "lookup",
) -> Lookup[T]:
    """Run ``fn`` and capture the expected failure types as a failed Lookup."""
    try:
        return Lookup(value=fn(*args))
    except expected as e:
        logger.warning("%s failed: %s", label, e)
        return Lookup(error=f"{type(e).__name__}: {e}")
