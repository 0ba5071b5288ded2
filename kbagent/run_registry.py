from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from kbagent.conversation_db import (
    connect_db as connect_conversations,
    edit_user_message_and_truncate,
    last_user_message,
    truncate_messages_from,
)
from kbagent.emitter import Emitter
from kbagent.errors import RunBusy
from kbagent.run_loop import RunLoop, RunRequest, RunResult


logger = logging.getLogger("kbagent.run_registry")

CANCEL_WAIT_S = 30.0


class RunHandle:
    """A run executing on its own thread; wait() returns its RunResult."""

    def __init__(self, run_id: str, conversation_id: str) -> None:
        self.run_id = run_id
        self.conversation_id = conversation_id
        self.cancel_event = threading.Event()
        self.result: Optional[RunResult] = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        if not self._done.wait(timeout):
            return None
        if self.error is not None:
            raise self.error
        return self.result


class _ConversationLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class RunRegistry:
    """
    At most one active run per conversation.

    Starting a run cancels the conversation's previous run and waits up to
    cancel_wait_s for it to reach a terminal state. A run that is still live
    after that makes the new start fail with RunBusy; nothing is launched,
    so two runs never write the same conversation history at once.
    Finished handles and idle conversation locks are dropped.
    """

    def __init__(self, loop: RunLoop, *, cancel_wait_s: float = CANCEL_WAIT_S) -> None:
        self.loop = loop
        self.cancel_wait_s = cancel_wait_s
        self._guard = threading.Lock()
        self._active: Dict[str, RunHandle] = {}
        self._conversation_locks: Dict[str, _ConversationLock] = {}

    @contextmanager
    def _serialized(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._conversation_locks.get(conversation_id)
            if entry is None:
                entry = _ConversationLock()
                self._conversation_locks[conversation_id] = entry
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._conversation_locks[conversation_id]

    def active(self, conversation_id: str) -> Optional[RunHandle]:
        with self._guard:
            handle = self._active.get(conversation_id)
        if handle is None or handle.done:
            return None
        return handle

    def cancel(self, conversation_id: str) -> bool:
        handle = self.active(conversation_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _stop_previous(self, conversation_id: str) -> None:
        previous = self.active(conversation_id)
        if previous is None:
            return
        logger.info("cancelling run %s before starting a new one", previous.run_id)
        previous.cancel()
        if not previous._done.wait(self.cancel_wait_s):
            logger.warning("run %s did not stop within %.1fs", previous.run_id, self.cancel_wait_s)
            raise RunBusy(
                f"Run {previous.run_id} in conversation {conversation_id} is still stopping; try again shortly"
            )

    def start(
        self,
        conversation_id: str,
        message: str,
        *,
        emitter: Optional[Emitter] = None,
    ) -> RunHandle:
        if not message.strip():
            raise ValueError("message must be non-empty")
        with self._serialized(conversation_id):
            self._stop_previous(conversation_id)
            return self._launch(RunRequest(conversation_id=conversation_id, message=message), emitter)

    def regenerate(self, conversation_id: str, *, emitter: Optional[Emitter] = None) -> RunHandle:
        """Drop everything after the last user message and answer it again."""
        with self._serialized(conversation_id):
            self._stop_previous(conversation_id)
            with connect_conversations(self.loop.conversations_path) as conn:
                last = last_user_message(conn, conversation_id)
                if last is None:
                    raise KeyError(f"No user message to regenerate in conversation {conversation_id}")
                removed = truncate_messages_from(conn, conversation_id, int(last["id"]) + 1)
            logger.info("regenerating %s: dropped %d messages", conversation_id, removed)
            return self._launch(RunRequest(conversation_id=conversation_id, origin="regenerate"), emitter)

    def edit_and_resend(
        self,
        conversation_id: str,
        message_id: int,
        content: str,
        *,
        emitter: Optional[Emitter] = None,
    ) -> RunHandle:
        with self._serialized(conversation_id):
            self._stop_previous(conversation_id)
            with connect_conversations(self.loop.conversations_path) as conn:
                edit_user_message_and_truncate(conn, conversation_id, message_id, content)
            return self._launch(RunRequest(conversation_id=conversation_id, origin="edit"), emitter)

    def _launch(self, request: RunRequest, emitter: Optional[Emitter]) -> RunHandle:
        # Surface malformed model ids to the caller instead of a background thread.
        primary = self.loop.resolve_model(request.conversation_id)
        self.loop.resolve_fallback(primary)

        handle = RunHandle(uuid.uuid4().hex, request.conversation_id)

        def target() -> None:
            try:
                handle.result = self.loop.run(
                    request,
                    cancel=handle.cancel_event,
                    emitter=emitter,
                    run_id=handle.run_id,
                )
            except Exception as exc:
                logger.exception("run %s raised", handle.run_id)
                handle.error = exc
            finally:
                with self._guard:
                    if self._active.get(request.conversation_id) is handle:
                        del self._active[request.conversation_id]
                handle._done.set()

        thread = threading.Thread(target=target, name=f"kbagent-run-{handle.run_id[:8]}", daemon=True)
        with self._guard:
            self._active[request.conversation_id] = handle
        thread.start()
        return handle
