"""
Bounded parallel calls on daemon threads.

Driver and exec calls can hang forever. Workers are daemon threads so an
abandoned call never keeps the interpreter alive at exit, and the caller
stops waiting once the deadline passes.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    """Result of one call: either ``value`` or the exception it raised."""

    item: Any
    value: Any = None
    error: Optional[Exception] = None


def run_bounded(
    func: Callable[[Any], Any],
    items: Iterable[Any],
    timeout: float,
    max_workers: int,
    name: str = "worker",
) -> tuple[list[Outcome], list[Any]]:
    """
    Call ``func`` on every item with at most ``max_workers`` in flight.

    Returns:
        (outcomes of the calls that finished in time, items still pending)
    """
    items = list(items)
    if not items:
        return [], []

    work: "queue.Queue[tuple[int, Any]]" = queue.Queue()
    for position, item in enumerate(items):
        work.put((position, item))
    finished: "queue.Queue[tuple[int, Outcome]]" = queue.Queue()

    def worker():
        while True:
            try:
                position, item = work.get_nowait()
            except queue.Empty:
                return
            try:
                outcome = Outcome(item, value=func(item))
            except Exception as e:
                outcome = Outcome(item, error=e)
            finished.put((position, outcome))

    for n in range(max(1, min(max_workers, len(items)))):
        threading.Thread(target=worker, name=f"{name}-{n}", daemon=True).start()

    deadline = time.monotonic() + timeout
    outcomes: dict[int, Outcome] = {}
    while len(outcomes) < len(items):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        try:
            position, outcome = finished.get(timeout=remaining)
        except queue.Empty:
            break
        outcomes[position] = outcome

    # Items nobody picked up yet are never started
    while True:
        try:
            work.get_nowait()
        except queue.Empty:
            break

    # A call may have finished between the deadline and the drain
    while True:
        try:
            position, outcome = finished.get_nowait()
        except queue.Empty:
            break
        outcomes[position] = outcome

    pending = [item for position, item in enumerate(items) if position not in outcomes]
    if pending:
        logger.debug(f"{name}: {len(pending)} of {len(items)} calls still pending after {timeout}s")
    return [outcomes[p] for p in sorted(outcomes)], pending
