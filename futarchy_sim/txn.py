from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Iterator
import copy
import logging

from .config import MarketConfig
from .errors import MarketError

logger = logging.getLogger(__name__)


@contextmanager
def atomic(*participants: Any, label: str = "unit_of_work") -> Iterator[None]:
    """
    Run a block as one all-or-nothing unit against `participants`.

    Each participant's attributes are snapshotted on entry; if the block
    raises, every participant is restored and the exception propagates.
    Configuration objects are shared, never copied.
    """
    participants = tuple(p for p in participants if p is not None)
    memo: dict = {id(p): p for p in participants}
    for p in participants:
        for value in vars(p).values():
            if isinstance(value, MarketConfig):
                memo[id(value)] = value
    snapshots = [(p, copy.deepcopy(vars(p), memo)) for p in participants]
    try:
        yield
    except Exception as exc:
        for p, state in snapshots:
            p.__dict__.clear()
            p.__dict__.update(state)
        reason = exc.reason if isinstance(exc, MarketError) else type(exc).__name__
        logger.warning("%s rolled back: %s (%s)", label, reason, exc)
        raise
