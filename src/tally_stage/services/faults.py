"""Fault injection for the mutation pipelines.

Pipelines call :meth:`FaultInjector.fire` at fixed points between their
steps. Tests and the demo harness arm those points to raise, or hook them to
synchronize concurrent callers.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Final

from tally_stage.core.errors import InjectedFault

logger = logging.getLogger(__name__)

AFTER_DETAIL_WRITE: Final[str] = "after_detail_write"
# After any aggregate snapshot read, before the first write of the attempt.
RACE_WINDOW: Final[str] = "race_window"
BEFORE_AGGREGATE_WRITE: Final[str] = "before_aggregate_write"
AFTER_AGGREGATE_WRITE: Final[str] = "after_aggregate_write"
AFTER_COMMIT: Final[str] = "after_commit"

FAULT_POINTS: Final[frozenset[str]] = frozenset(
    {AFTER_DETAIL_WRITE, RACE_WINDOW, BEFORE_AGGREGATE_WRITE, AFTER_AGGREGATE_WRITE, AFTER_COMMIT}
)


@dataclass
class _Rule:
    """Arming of a single fault point."""

    skip: int = 0
    remaining: int | None = 1
    exc_factory: Callable[[str], BaseException] = InjectedFault
    when: Callable[[dict[str, Any]], bool] | None = None


@dataclass
class FaultInjector:
    """Thread-safe registry of armed faults and hooks."""

    _rules: dict[str, list[_Rule]] = field(default_factory=lambda: defaultdict(list))
    _hooks: dict[str, list[Callable[[dict[str, Any]], None]]] = field(
        default_factory=lambda: defaultdict(list)
    )
    hits: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _lock: Lock = field(default_factory=Lock)

    def arm(
        self,
        point: str,
        *,
        times: int | None = 1,
        skip: int = 0,
        exc_factory: Callable[[str], BaseException] = InjectedFault,
        when: Callable[[dict[str, Any]], bool] | None = None,
    ) -> FaultInjector:
        """Make ``point`` raise.

        Args:
            point: One of :data:`FAULT_POINTS`.
            times: Number of hits that raise; ``None`` raises forever.
            skip: Number of matching hits to let through first.
            exc_factory: Builds the exception from the point name.
            when: Optional predicate over the call context.
        """
        self._check_point(point)
        with self._lock:
            self._rules[point].append(
                _Rule(skip=skip, remaining=times, exc_factory=exc_factory, when=when)
            )
        return self

    def hook(self, point: str, callback: Callable[[dict[str, Any]], None]) -> FaultInjector:
        """Run ``callback`` every time ``point`` fires (e.g. a barrier wait)."""
        self._check_point(point)
        with self._lock:
            self._hooks[point].append(callback)
        return self

    def clear(self) -> None:
        """Disarm every point and drop all hooks."""
        with self._lock:
            self._rules.clear()
            self._hooks.clear()
            self.hits.clear()

    def fire(self, point: str, **context: Any) -> None:
        """Signal that execution reached ``point``; may raise."""
        exc: BaseException | None = None
        with self._lock:
            self.hits[point] += 1
            hooks = list(self._hooks.get(point, ()))
            for rule in self._rules.get(point, ()):
                if rule.remaining == 0:
                    continue
                if rule.when is not None and not rule.when(context):
                    continue
                if rule.skip > 0:
                    rule.skip -= 1
                    continue
                if rule.remaining is not None:
                    rule.remaining -= 1
                exc = rule.exc_factory(point)
                break

        # Hooks may block, so they run outside the lock.
        for callback in hooks:
            callback(context)

        if exc is not None:
            logger.debug("Raising injected fault at %s (%s)", point, context)
            raise exc

    @staticmethod
    def _check_point(point: str) -> None:
        if point not in FAULT_POINTS:
            raise ValueError(f"Unknown fault point '{point}'")

