from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from kbagent.protocol import ChatMessage


ITERATIONS = "iterations"
TOOL_CALLS = "tool_calls"
WALL_TIME = "wall_time"
PER_RESPONSE_TIME = "per_response_time"
TOKENS = "tokens"

TIMEOUT_REASONS = {
    WALL_TIME: "time_budget_exceeded",
    ITERATIONS: "max_iterations_reached",
    TOOL_CALLS: "max_tool_calls_reached",
    TOKENS: "token_budget_exceeded",
    PER_RESPONSE_TIME: "response_timeout",
}


@dataclass(frozen=True)
class RunBudget:
    max_iterations: int = 15
    max_tool_calls: int = 30
    max_wall_clock_s: float = 120.0
    max_response_s: float = 45.0
    token_budget: Optional[int] = None
    max_verify_failures: int = 3


@dataclass(frozen=True)
class BudgetVerdict:
    ok: bool
    kind: Optional[str] = None

    @property
    def reason(self) -> str:
        if self.kind is None:
            return ""
        return TIMEOUT_REASONS.get(self.kind, self.kind)


BUDGET_OK = BudgetVerdict(ok=True)


def approximate_token_count(messages: Iterable[ChatMessage]) -> int:
    total = 0
    for msg in messages:
        total += len(msg.content) // 4 + 8
        if msg.tool_name:
            total += len(msg.tool_name) // 4
        for call in msg.tool_calls:
            total += (len(call.name) + len(call.arguments_json())) // 4
    return total


def approximate_model_context_limit(model: str) -> int:
    normalized = model.lower()
    if any(tag in normalized for tag in ("gemini-1.5", "gemini-2.5", "gemini-3")):
        return 1_000_000
    if "claude" in normalized:
        return 200_000
    if any(tag in normalized for tag in ("gpt-5", "gpt-4.1", "gpt-4o")):
        return 128_000
    if "qwen" in normalized:
        return 131_072
    return 64_000


def check_budget(
    budget: RunBudget,
    *,
    elapsed_s: float,
    iterations: int,
    tool_calls: int,
    tokens_used: int = 0,
) -> BudgetVerdict:
    """Pure ceiling check; the order decides which kind wins when several trip at once."""
    if elapsed_s > budget.max_wall_clock_s:
        return BudgetVerdict(ok=False, kind=WALL_TIME)
    if iterations >= budget.max_iterations:
        return BudgetVerdict(ok=False, kind=ITERATIONS)
    if tool_calls >= budget.max_tool_calls:
        return BudgetVerdict(ok=False, kind=TOOL_CALLS)
    if budget.token_budget is not None and tokens_used >= budget.token_budget:
        return BudgetVerdict(ok=False, kind=TOKENS)
    return BUDGET_OK


class BudgetTracker:
    """
    Per-run counters against a fixed RunBudget.

    Counters only move forward. One provider call is one iteration and one
    executed tool is one tool call.
    """

    def __init__(self, budget: RunBudget, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget = budget
        self._clock = clock
        self.started_at = clock()
        self.iterations = 0
        self.tool_calls = 0
        self.write_calls = 0
        self.verify_failures = 0
        self.tokens_used = 0

    @property
    def elapsed_s(self) -> float:
        return self._clock() - self.started_at

    def record_iteration(self) -> None:
        self.iterations += 1

    def record_tool_call(self, *, mutating: bool = False) -> None:
        self.tool_calls += 1
        if mutating:
            self.write_calls += 1

    def record_verify_failure(self) -> None:
        self.verify_failures += 1

    def record_tokens(self, total_tokens: int) -> None:
        if total_tokens > 0:
            self.tokens_used += int(total_tokens)

    def check(self, messages: Optional[Iterable[ChatMessage]] = None) -> BudgetVerdict:
        tokens = self.tokens_used
        if self.budget.token_budget is not None and messages is not None:
            tokens = max(tokens, approximate_token_count(messages))
        return check_budget(
            self.budget,
            elapsed_s=self.elapsed_s,
            iterations=self.iterations,
            tool_calls=self.tool_calls,
            tokens_used=tokens,
        )

    def tool_call_allowed(self) -> bool:
        return self.tool_calls < self.budget.max_tool_calls

    def verify_failures_exceeded(self) -> bool:
        return self.verify_failures > self.budget.max_verify_failures

    def response_timeout_s(self) -> float:
        """Seconds allowed for the next provider response, capped by the remaining wall clock."""
        remaining = self.budget.max_wall_clock_s - self.elapsed_s
        return max(0.0, min(float(self.budget.max_response_s), remaining))
