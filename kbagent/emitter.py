from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from kbagent.ledger_db import append_event, connect_db


logger = logging.getLogger("kbagent.emitter")


class Emitter(ABC):
    """Observer port. emit must return quickly and must not raise into the run."""

    @abstractmethod
    def emit(self, channel: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullEmitter(Emitter):
    def emit(self, channel: str, payload: Dict[str, Any]) -> None:
        return None


class CallbackEmitter(Emitter):
    def __init__(self, callback: Callable[[str, Dict[str, Any]], None]) -> None:
        self._callback = callback

    def emit(self, channel: str, payload: Dict[str, Any]) -> None:
        self._callback(channel, payload)


class QueueEmitter(Emitter):
    """
    Bounded buffer between the run loop and a slower consumer.

    When the buffer is full the oldest item is discarded, so the producer
    never waits on the consumer. Dropped items are still in the ledger.
    """

    def __init__(self, maxsize: int = 1024) -> None:
        self.maxsize = max(1, int(maxsize))
        self._items: Deque[Tuple[str, Dict[str, Any]]] = deque()
        self._cond = threading.Condition()
        self.dropped = 0

    def emit(self, channel: str, payload: Dict[str, Any]) -> None:
        with self._cond:
            if len(self._items) >= self.maxsize:
                self._items.popleft()
                self.dropped += 1
            self._items.append((channel, payload))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Tuple[str, Dict[str, Any]]]:
        with self._cond:
            if not self._items:
                self._cond.wait(timeout)
            if not self._items:
                return None
            return self._items.popleft()

    def drain(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
            return items

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class RunEventSink:
    """
    Ledger-first event path for one run.

    Every event is committed to the ledger before it is forwarded, so the
    ledger stays authoritative even when the observer is gone or broken.
    Channels in ``transient_channels`` (token deltas) are forwarded only.
    """

    def __init__(
        self,
        *,
        ledger_path: Path,
        run_id: str,
        emitter: Optional[Emitter] = None,
        transient_channels: Tuple[str, ...] = (),
    ) -> None:
        self.ledger_path = ledger_path
        self.run_id = run_id
        self.emitter = emitter or NullEmitter()
        self.transient_channels = frozenset(transient_channels)
        self.last_seq = 0

    def emit(self, channel: str, payload: Dict[str, Any], *, iteration: int = 0, event_type: str = "") -> int:
        if channel not in self.transient_channels:
            with connect_db(self.ledger_path) as conn:
                self.last_seq = append_event(
                    conn,
                    run_id=self.run_id,
                    iteration=iteration,
                    channel=channel,
                    event_type=event_type or channel,
                    payload=payload,
                )
        self.forward(channel, payload)
        return self.last_seq

    def forward(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            self.emitter.emit(channel, payload)
        except Exception:
            logger.exception("emitter failed on channel %s for run %s", channel, self.run_id)
