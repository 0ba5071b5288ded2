from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from kbagent.budget import TOOL_CALLS, TIMEOUT_REASONS, WALL_TIME, BudgetTracker, RunBudget
from kbagent.compaction import FLUSH_NOTE_PATH, maybe_compact, summary_request
from kbagent.config import CompactionConfig
from kbagent.conversation_db import (
    append_message,
    connect_db as connect_conversations,
    ensure_conversation,
    folder_instruction_chain,
    get_conversation,
    init_db as init_conversations,
    load_history,
    resolve_conversation_model_id,
)
from kbagent.emitter import Emitter, RunEventSink
from kbagent.errors import (
    AgentError,
    BudgetExceeded,
    IndexNotReady,
    ProviderError,
    ResponseTimeout,
    RunCancelled,
    WriteVerificationFailed,
)
from kbagent.events import (
    CH_CONTEXT_COMPACTION,
    CH_PROVIDER_FALLBACK,
    CH_PROVIDER_RETRY,
    CH_RUN_STATE,
    CH_TEXT_DELTA,
    CH_THINKING_SUMMARY,
    CH_TIMELINE_STEP,
    CH_TOOL_CALL,
    CH_TOOL_RESULT,
    CH_TOOL_START,
    CH_USAGE,
    CH_VERIFICATION,
    now_iso,
    run_state_payload,
    timeline_step_payload,
    tool_call_payload,
    tool_result_payload,
    verification_payload,
    with_run,
)
from kbagent.instructions import (
    IDENTITY_AND_SAFETY,
    build_system_prompt,
    load_instruction_sources,
    runtime_context,
)
from kbagent.ledger_db import begin_run, connect_db as connect_ledger, finish_run, init_db as init_ledger, update_run_status
from kbagent.protocol import ChatMessage, ToolCall, try_parse_text_tool_call
from kbagent.providers.base import (
    CompletionResult,
    TextDelta,
    ThinkingDelta,
    TokenUsage,
    ToolCallEvent,
    UsageEvent,
)
from kbagent.providers.gateway import FallbackNotice, ProviderGateway, RetryNotice
from kbagent.providers.registry import ModelRef, is_valid_model_id, split_model_id
from kbagent.retrieval import RetrievalEngine
from kbagent.state import AgentState, check_transition
from kbagent.tools import ToolContext, ToolExecutor
from kbagent.vault import VaultStore


logger = logging.getLogger("kbagent.run_loop")

EMPTY_INDEX_MESSAGE = "Index is empty. Run reindex before chatting."
EMPTY_RESPONSE_MESSAGE = "Model returned an empty response"
VERIFY_ERROR_CODES = ("verify_mismatch", "verify_failed")
RECOVERY_HINT = (
    "Tool recovery: the previous tool call had invalid arguments. "
    "Retry once with arguments that exactly match the tool schema. "
    "Use kb_search for lookups before reading or writing notes."
)
THINKING_SUMMARY_MAX_CHARS = 180
THINKING_SUMMARY_MAX_WAIT_S = 0.65


@dataclass(frozen=True)
class RunRequest:
    conversation_id: str
    # None reruns the history as stored (regenerate / edit-and-resend).
    message: Optional[str] = None
    origin: str = "new_run"


@dataclass
class RunResult:
    run_id: str
    conversation_id: str
    status: AgentState
    reason: Optional[str]
    text: str
    model_id: str
    iterations: int = 0
    tool_calls: int = 0
    write_calls: int = 0
    verify_failures: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: Optional[Dict[str, str]] = None

    @property
    def ok(self) -> bool:
        return self.status == AgentState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "reason": self.reason,
            "text": self.text,
            "model_id": self.model_id,
            "iterations": self.iterations,
            "tool_calls": self.tool_calls,
            "write_calls": self.write_calls,
            "verify_failures": self.verify_failures,
            "token_usage": self.usage.to_dict(),
            "error": self.error,
        }


class ThinkingBuffer:
    """
    Turns a stream of reasoning fragments into short summaries.

    A summary is released on a sentence boundary, when it grows past
    max_chars, or when the oldest buffered fragment is older than max_wait_s.
    Whitespace is collapsed and an exact repeat of the previous summary is
    dropped.
    """

    def __init__(
        self,
        *,
        max_chars: int = THINKING_SUMMARY_MAX_CHARS,
        max_wait_s: float = THINKING_SUMMARY_MAX_WAIT_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_chars = max_chars
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._parts: List[str] = []
        self._started: Optional[float] = None
        self._last: Optional[str] = None

    def push(self, text: str) -> Optional[str]:
        if not text:
            return None
        if self._started is None:
            self._started = self._clock()
        self._parts.append(text)
        pending = " ".join("".join(self._parts).split())
        if (
            pending.endswith((".", "!", "?"))
            or len(pending) >= self.max_chars
            or self._clock() - self._started >= self.max_wait_s
        ):
            return self._take()
        return None

    def flush(self) -> Optional[str]:
        return self._take()

    def _take(self) -> Optional[str]:
        summary = " ".join("".join(self._parts).split())
        self._parts = []
        self._started = None
        if not summary or summary == self._last:
            return None
        self._last = summary
        return summary


class RunLoop:
    """
    Drives one user turn through plan, provider call, tools and verification
    until the model answers or a budget, cancellation or error ends the run.
    """

    def __init__(
        self,
        *,
        gateway: ProviderGateway,
        tools: ToolExecutor,
        vault: VaultStore,
        retrieval: Optional[RetrievalEngine],
        ledger_path: Path,
        conversations_path: Path,
        budget: RunBudget,
        compaction: CompactionConfig,
        default_model_id: str,
        fallback_model_id: str = "",
        language: Optional[str] = None,
        identity: str = IDENTITY_AND_SAFETY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.tools = tools
        self.vault = vault
        self.retrieval = retrieval
        self.ledger_path = ledger_path
        self.conversations_path = conversations_path
        self.budget = budget
        self.compaction = compaction
        self.default_model_id = default_model_id
        self.fallback_model_id = (fallback_model_id or "").strip()
        self.language = language
        self.identity = identity
        self.clock = clock
        init_ledger(ledger_path)
        init_conversations(conversations_path)

    def resolve_model(self, conversation_id: str) -> ModelRef:
        with connect_conversations(self.conversations_path) as conn:
            model_id = resolve_conversation_model_id(
                conn,
                conversation_id,
                global_default=self.default_model_id,
                is_valid=is_valid_model_id,
            )
        return split_model_id(model_id)

    def resolve_fallback(self, primary: ModelRef) -> Optional[ModelRef]:
        if not self.fallback_model_id:
            return None
        fallback = split_model_id(self.fallback_model_id)
        return None if fallback.model_id == primary.model_id else fallback

    def run(
        self,
        request: RunRequest,
        *,
        cancel: Optional[threading.Event] = None,
        emitter: Optional[Emitter] = None,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Execute one run to a terminal state and return its summary.

        Model ids are validated before anything is recorded, so a malformed
        configured id raises InvalidModelId. Every other failure ends as a
        recorded terminal state with a visible assistant message.
        """
        model_ref = self.resolve_model(request.conversation_id)
        fallback = self.resolve_fallback(model_ref)
        run = _AgentRun(
            loop=self,
            request=request,
            run_id=run_id or uuid.uuid4().hex,
            model_ref=model_ref,
            fallback=fallback,
            cancel=cancel or threading.Event(),
            emitter=emitter,
        )
        return run.execute()


class _AgentRun:
    def __init__(
        self,
        *,
        loop: RunLoop,
        request: RunRequest,
        run_id: str,
        model_ref: ModelRef,
        fallback: Optional[ModelRef],
        cancel: threading.Event,
        emitter: Optional[Emitter],
    ) -> None:
        self.loop = loop
        self.request = request
        self.run_id = run_id
        self.model_ref = model_ref
        self.fallback = fallback
        self.cancel = cancel
        self.sink = RunEventSink(
            ledger_path=loop.ledger_path,
            run_id=run_id,
            emitter=emitter,
            transient_channels=(CH_TEXT_DELTA,),
        )
        self.tracker = BudgetTracker(loop.budget, clock=loop.clock)
        self.state = AgentState.ACCEPTED
        self.usage = TokenUsage()
        self.messages: List[ChatMessage] = []
        self.partial_texts: List[str] = []
        self.stream_text: List[str] = []
        self.result: Optional[RunResult] = None

    @property
    def iteration(self) -> int:
        return self.tracker.iterations

    # -- lifecycle -----------------------------------------------------------

    def execute(self) -> RunResult:
        self._accept()
        try:
            self._check_index()
            self._loop()
        except RunCancelled as exc:
            self._terminate(AgentState.CANCELLED, "cancelled", exc)
        except BudgetExceeded as exc:
            self._terminate(AgentState.TIMEOUT, TIMEOUT_REASONS.get(exc.kind, exc.kind), exc)
        except ResponseTimeout as exc:
            self._terminate(AgentState.TIMEOUT, "response_timeout", exc)
        except AgentError as exc:
            self._terminate(AgentState.FAILED, exc.code, exc)
        except Exception as exc:
            logger.exception("run %s crashed", self.run_id)
            self._terminate(AgentState.FAILED, "internal_error", exc)
        if self.result is None:
            raise RuntimeError(f"run {self.run_id} ended without a terminal state")
        return self.result

    def _accept(self) -> None:
        loop = self.loop
        with connect_conversations(loop.conversations_path) as conn:
            ensure_conversation(conn, self.request.conversation_id)
            if self.request.message is not None:
                append_message(conn, self.request.conversation_id, ChatMessage.user(self.request.message))
            conv = get_conversation(conn, self.request.conversation_id) or {}
            folder_instructions = folder_instruction_chain(conn, conv.get("folder_id"))
            history = load_history(conn, self.request.conversation_id)

        ctx = runtime_context(
            vault_path=str(loop.vault.root),
            note_count=loop.vault.note_count(),
            language=loop.language,
            provider=self.model_ref.provider,
            model=self.model_ref.model,
            folder_instructions=folder_instructions,
        )
        composed = build_system_prompt(
            ctx,
            load_instruction_sources(loop.vault),
            loop.tools.list_definitions(),
            identity=loop.identity,
        )
        self.messages = [ChatMessage.system(composed.prompt)] + history

        with connect_ledger(loop.ledger_path) as conn:
            begin_run(
                conn,
                run_id=self.run_id,
                conversation_id=self.request.conversation_id,
                provider=self.model_ref.provider,
                model=self.model_ref.model,
                policy_version=composed.policy_version,
                policy_fingerprint=composed.policy_fingerprint,
                status=AgentState.ACCEPTED.value,
            )
        logger.info("run %s accepted for %s on %s", self.run_id, self.request.conversation_id, self.model_ref.model_id)
        self.sink.emit(
            CH_RUN_STATE,
            run_state_payload(self.run_id, AgentState.ACCEPTED.value, 0, self.request.origin),
            event_type=AgentState.ACCEPTED.value,
        )

    def _check_index(self) -> None:
        if self.loop.vault.note_count() == 0:
            return
        # Blank notes index as note rows without chunks; that still counts as built.
        notes, _ = self.loop.retrieval.index_counts() if self.loop.retrieval is not None else (0, 0)
        if notes == 0:
            raise IndexNotReady(EMPTY_INDEX_MESSAGE)

    def _enter(self, target: AgentState, reason: Optional[str] = None) -> None:
        if target == self.state:
            return
        self.state = check_transition(self.state, target)
        with connect_ledger(self.loop.ledger_path) as conn:
            update_run_status(conn, run_id=self.run_id, status=target.value)
        self.sink.emit(
            CH_RUN_STATE,
            run_state_payload(self.run_id, target.value, self.iteration, reason),
            iteration=self.iteration,
            event_type=target.value,
        )

    def _timeline(self, phase: str, **kwargs: Any) -> None:
        self.sink.emit(
            CH_TIMELINE_STEP,
            timeline_step_payload(self.run_id, self.iteration, phase, **kwargs),
            iteration=self.iteration,
            event_type=phase,
        )

    def _persist(self, message: ChatMessage, *, tool_result: Optional[Dict[str, Any]] = None) -> None:
        with connect_conversations(self.loop.conversations_path) as conn:
            append_message(conn, self.request.conversation_id, message, run_id=self.run_id, tool_result=tool_result)

    # -- main loop -----------------------------------------------------------

    def _check_cancel(self, where: str) -> None:
        if self.cancel.is_set():
            raise RunCancelled(f"Run cancelled {where}")

    def _loop(self) -> None:
        while True:
            self._check_cancel("before planning")
            verdict = self.tracker.check(self.messages)
            if not verdict.ok:
                raise BudgetExceeded(verdict.kind or WALL_TIME, f"Run stopped: {verdict.reason}")

            self._enter(AgentState.PLANNING)
            self._timeline("plan")
            first_iteration = self.iteration == 0
            result = self._call_model()
            self.tracker.record_iteration()
            self._check_cancel("during response")

            calls = list(result.tool_calls)
            text = result.text
            if not calls:
                parsed = try_parse_text_tool_call(text)
                if parsed is not None:
                    calls = [parsed.tool_call]
                    text = parsed.trailing_text

            if not calls:
                if not text.strip():
                    raise ProviderError(
                        EMPTY_RESPONSE_MESSAGE,
                        provider=self.model_ref.provider,
                        model=self.model_ref.model,
                    )
                self._respond(text)
                return

            if text.strip():
                self.partial_texts.append(text.strip())
            self.stream_text = []
            assistant = ChatMessage.assistant(text, calls)
            self.messages.append(assistant)
            self._persist(assistant)

            envelopes = self._run_tools(calls)

            if self.tracker.verify_failures_exceeded():
                raise WriteVerificationFailed(
                    f"Write verification failed {self.tracker.verify_failures} times; stopping the run"
                )
            if first_iteration and envelopes and not text.strip():
                failed = [e for e in envelopes if not e.get("ok")]
                if len(failed) == len(envelopes) and any(
                    (e.get("error") or {}).get("code") == "invalid_arguments" for e in failed
                ):
                    self.messages.append(ChatMessage.system(RECOVERY_HINT))
            self._compact()

    def _call_model(self) -> CompletionResult:
        self._enter(AgentState.THINKING)
        self.stream_text = []
        thinking = ThinkingBuffer(clock=self.loop.clock)
        timeout_s = self.tracker.response_timeout_s()
        if timeout_s <= 0:
            raise BudgetExceeded(WALL_TIME, "Run stopped: no time left for another response")

        result: Optional[CompletionResult] = None
        try:
            for event in self.loop.gateway.stream_completion(
                self.messages,
                self.loop.tools.list_definitions(),
                self.model_ref,
                fallback=self.fallback,
                timeout_s=timeout_s,
                cancel=self.cancel,
            ):
                if isinstance(event, TextDelta):
                    self.stream_text.append(event.text)
                    self.sink.emit(CH_TEXT_DELTA, with_run(self.run_id, self.iteration, {"delta": event.text}))
                elif isinstance(event, ThinkingDelta):
                    self._emit_thinking(thinking.push(event.text))
                elif isinstance(event, ToolCallEvent):
                    call = event.call
                    self.sink.emit(
                        CH_TOOL_CALL,
                        tool_call_payload(self.run_id, self.iteration, call.id, call.name, call.args),
                        iteration=self.iteration,
                    )
                elif isinstance(event, UsageEvent):
                    self._record_usage(event.usage)
                elif isinstance(event, RetryNotice):
                    self._on_retry(event)
                elif isinstance(event, FallbackNotice):
                    self._on_fallback(event)
                elif isinstance(event, CompletionResult):
                    result = event
        finally:
            self._emit_thinking(thinking.flush())
        if result is None:
            raise ProviderError("Provider stream ended without a result", provider=self.model_ref.provider)
        return result

    def _emit_thinking(self, summary: Optional[str]) -> None:
        if summary:
            self.sink.emit(
                CH_THINKING_SUMMARY,
                with_run(self.run_id, self.iteration, {"summary": summary}),
                iteration=self.iteration,
            )

    def _record_usage(self, delta: TokenUsage) -> None:
        self.usage.add(delta)
        self.tracker.record_tokens(delta.effective_total())
        self.sink.emit(
            CH_USAGE,
            with_run(self.run_id, self.iteration, {"delta": delta.to_dict(), "total": self.usage.to_dict()}),
            iteration=self.iteration,
        )

    def _on_retry(self, notice: RetryNotice) -> None:
        self.stream_text = []
        self.sink.emit(
            CH_PROVIDER_RETRY,
            with_run(
                self.run_id,
                self.iteration,
                {
                    "provider": notice.provider,
                    "model": notice.model,
                    "attempt": notice.attempt,
                    "max_attempts": notice.max_attempts,
                    "retry_in_ms": notice.retry_in_ms,
                    "error": notice.error,
                },
            ),
            iteration=self.iteration,
        )
        self._timeline("retry")

    def _on_fallback(self, notice: FallbackNotice) -> None:
        self.stream_text = []
        if self.fallback is not None:
            self.model_ref = self.fallback
            self.fallback = None
        self.sink.emit(
            CH_PROVIDER_FALLBACK,
            with_run(
                self.run_id,
                self.iteration,
                {"from_model_id": notice.from_model_id, "to_model_id": notice.to_model_id, "reason": notice.reason},
            ),
            iteration=self.iteration,
        )
        self._timeline("fallback")

    # -- tools ---------------------------------------------------------------

    def _run_tools(self, calls: List[ToolCall]) -> List[Dict[str, Any]]:
        envelopes: List[Dict[str, Any]] = []
        for index, call in enumerate(calls):
            # Cancellation and budgets are honoured between tools, never inside a write.
            try:
                self._check_cancel("before tool execution")
                if self.tracker.elapsed_s > self.loop.budget.max_wall_clock_s:
                    raise BudgetExceeded(WALL_TIME, "Run stopped: time_budget_exceeded")
                if not self.tracker.tool_call_allowed():
                    raise BudgetExceeded(TOOL_CALLS, "Run stopped: max_tool_calls_reached")
            except AgentError as exc:
                self._skip_calls(calls[index:], exc)
                raise
            envelopes.append(self._run_tool(call))
        return envelopes

    def _run_tool(self, call: ToolCall) -> Dict[str, Any]:
        mutating = self.loop.tools.is_mutating(call.name)
        self._enter(AgentState.TOOL_CALLING, call.name)
        self.sink.emit(
            CH_TOOL_START,
            with_run(self.run_id, self.iteration, {"call_id": call.id, "tool": call.name}),
            iteration=self.iteration,
        )
        self._timeline("tool_start", tool=call.name, args=call.args)

        envelope = self.loop.tools.execute(
            call.name,
            call.args,
            ToolContext(run_id=self.run_id, iteration=self.iteration),
            raw_arguments=call.raw_arguments,
        )
        self.tracker.record_tool_call(mutating=mutating)
        self.sink.emit(
            CH_TOOL_RESULT,
            tool_result_payload(self.run_id, self.iteration, call.id, envelope),
            iteration=self.iteration,
        )
        self._timeline("tool_result", tool=call.name, envelope=envelope)

        if mutating:
            self._enter(AgentState.VERIFYING, call.name)
            self.sink.emit(
                CH_VERIFICATION,
                verification_payload(self.run_id, self.iteration, call.name, envelope),
                iteration=self.iteration,
            )
            self._timeline("verify", tool=call.name, envelope=envelope)
            error_code = (envelope.get("error") or {}).get("code")
            if error_code in VERIFY_ERROR_CODES:
                self.tracker.record_verify_failure()
                logger.warning("run %s: write verification failed for %s", self.run_id, envelope.get("target"))

        message = ChatMessage.tool(
            json.dumps(envelope, ensure_ascii=False, default=str),
            tool_call_id=call.id,
            tool_name=call.name,
        )
        self.messages.append(message)
        self._persist(message, tool_result=envelope)
        return envelope

    def _skip_calls(self, calls: List[ToolCall], reason: AgentError) -> None:
        """Answer unexecuted calls so the stored history stays well-formed."""
        for call in calls:
            envelope = {
                "ok": False,
                "tool": call.name,
                "action": "skipped",
                "result": None,
                "proof": None,
                "target": None,
                "ts": now_iso(),
                "error": {"code": "skipped", "message": str(reason), "retriable": False},
            }
            message = ChatMessage.tool(json.dumps(envelope, ensure_ascii=False), tool_call_id=call.id, tool_name=call.name)
            self.messages.append(message)
            self._persist(message, tool_result=envelope)

    # -- compaction ----------------------------------------------------------

    def _compact(self) -> None:
        outcome = maybe_compact(
            self.messages,
            model=self.model_ref.model,
            config=self.loop.compaction,
            summarize=self._summarize,
            flush=self._flush_summary,
        )
        if outcome is None:
            return
        self.messages = outcome.messages
        self.sink.emit(
            CH_CONTEXT_COMPACTION,
            with_run(self.run_id, self.iteration, outcome.payload),
            iteration=self.iteration,
        )
        self._timeline("compaction")

    def _summarize(self, dropped: List[ChatMessage]) -> Optional[str]:
        request = summary_request(dropped)
        if request is None:
            return None
        result = self.loop.gateway.complete(
            request,
            self.model_ref,
            timeout_s=self.tracker.response_timeout_s(),
            cancel=self.cancel,
        )
        return result.text

    def _flush_summary(self, summary: str) -> Dict[str, Any]:
        existing = self.loop.vault.read_text(FLUSH_NOTE_PATH)
        entry = f"## {now_iso()} (run {self.run_id})\n\n{summary.strip()}\n"
        if existing is None:
            name, content = "kb_create", f"# Context compaction flush\n\n{entry}"
        else:
            name, content = "kb_update", existing.rstrip() + "\n\n" + entry
        envelope = self.loop.tools.execute(
            name,
            {"path": FLUSH_NOTE_PATH, "content": content},
            ToolContext(run_id=self.run_id, iteration=self.iteration),
        )
        self.tracker.record_tool_call(mutating=True)
        return envelope

    # -- terminal states -----------------------------------------------------

    def _respond(self, text: str) -> None:
        self._enter(AgentState.RESPONDING)
        message = ChatMessage.assistant(text)
        self.messages.append(message)
        self._persist(message)
        self._finish(AgentState.COMPLETED, None, text, None)

    def _terminate(self, status: AgentState, reason: str, exc: BaseException) -> None:
        logger.info("run %s ended %s (%s): %s", self.run_id, status.value, reason, exc)
        current = "".join(self.stream_text).strip()
        partial = "\n\n".join(self.partial_texts + ([current] if current else []))
        if status == AgentState.FAILED:
            notice = f"Run failed: {exc}"
        else:
            notice = f"[Run stopped: {reason}]"
        text = f"{partial}\n\n{notice}" if partial else notice
        self._persist(ChatMessage.assistant(text))
        error = None if status == AgentState.CANCELLED else {"code": reason, "message": str(exc)}
        self._finish(status, reason, text, error)

    def _finish(
        self,
        status: AgentState,
        reason: Optional[str],
        text: str,
        error: Optional[Dict[str, str]],
    ) -> None:
        self.state = check_transition(self.state, status)
        self._timeline("done")
        self.sink.emit(
            CH_RUN_STATE,
            run_state_payload(self.run_id, status.value, self.iteration, reason),
            iteration=self.iteration,
            event_type=status.value,
        )
        with connect_ledger(self.loop.ledger_path) as conn:
            finish_run(
                conn,
                run_id=self.run_id,
                status=status.value,
                iterations=self.tracker.iterations,
                tool_calls=self.tracker.tool_calls,
                write_calls=self.tracker.write_calls,
                verify_failures=self.tracker.verify_failures,
                token_usage=self.usage.to_dict(),
                error=(error or {}).get("message"),
            )
        self.result = RunResult(
            run_id=self.run_id,
            conversation_id=self.request.conversation_id,
            status=status,
            reason=reason,
            text=text,
            model_id=self.model_ref.model_id,
            iterations=self.tracker.iterations,
            tool_calls=self.tracker.tool_calls,
            write_calls=self.tracker.write_calls,
            verify_failures=self.tracker.verify_failures,
            usage=self.usage,
            error=error,
        )
