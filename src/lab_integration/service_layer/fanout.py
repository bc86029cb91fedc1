"""Bounded concurrent execution of independent outbound sends."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Hashable, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Task = Tuple[Hashable, Callable[[], None]]


class Outcome(NamedTuple):
    key: Hashable
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _run(key: Hashable, send: Callable[[], None]) -> Outcome:
    try:
        send()
        return Outcome(key)
    except Exception as e:  # pylint: disable=broad-except
        return Outcome(key, e)


def fan_out(tasks: Sequence[Task], width: int) -> List[Outcome]:
    """
    Run every task on a pool of at most `width` threads.

    A task that raises yields an Outcome carrying the exception; siblings
    are unaffected. Outcomes come back in task order.
    """
    if not tasks:
        return []
    workers = max(1, min(width, len(tasks)))
    logger.debug(f"Fanning out {len(tasks)} tasks over {workers} workers")
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_run, key, send) for key, send in tasks]
        return [f.result() for f in futures]
