from __future__ import annotations

import unittest

from kbagent.budget import (
    ITERATIONS,
    TOKENS,
    TOOL_CALLS,
    WALL_TIME,
    BudgetTracker,
    RunBudget,
    approximate_model_context_limit,
    check_budget,
)
from kbagent.protocol import ChatMessage
from kbagent.state import AgentState, InvalidTransition, can_transition, check_transition


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class StateMachineTests(unittest.TestCase):
    def test_happy_path_transitions_are_allowed(self) -> None:
        path = [
            AgentState.ACCEPTED,
            AgentState.PLANNING,
            AgentState.THINKING,
            AgentState.TOOL_CALLING,
            AgentState.VERIFYING,
            AgentState.PLANNING,
            AgentState.THINKING,
            AgentState.RESPONDING,
            AgentState.COMPLETED,
        ]
        state = path[0]
        for target in path[1:]:
            state = check_transition(state, target)
        self.assertTrue(state.is_terminal)

    def test_escape_states_reachable_from_any_active_state(self) -> None:
        for state in AgentState:
            if state.is_terminal:
                continue
            for escape in (AgentState.FAILED, AgentState.TIMEOUT, AgentState.CANCELLED):
                self.assertTrue(can_transition(state, escape), f"{state} -> {escape}")

    def test_terminal_states_are_final(self) -> None:
        for state in (AgentState.COMPLETED, AgentState.FAILED, AgentState.TIMEOUT, AgentState.CANCELLED):
            with self.assertRaises(InvalidTransition):
                check_transition(state, AgentState.PLANNING)
            self.assertFalse(can_transition(state, AgentState.FAILED))

    def test_skipping_thinking_is_rejected(self) -> None:
        with self.assertRaises(InvalidTransition):
            check_transition(AgentState.PLANNING, AgentState.RESPONDING)
        with self.assertRaises(InvalidTransition):
            check_transition(AgentState.ACCEPTED, AgentState.COMPLETED)


class BudgetTests(unittest.TestCase):
    def test_wall_time_wins_over_other_ceilings(self) -> None:
        budget = RunBudget(max_iterations=1, max_tool_calls=1, max_wall_clock_s=10)
        verdict = check_budget(budget, elapsed_s=11, iterations=5, tool_calls=5)
        self.assertFalse(verdict.ok)
        self.assertEqual(verdict.kind, WALL_TIME)
        self.assertEqual(verdict.reason, "time_budget_exceeded")

    def test_iteration_ceiling_is_inclusive(self) -> None:
        budget = RunBudget(max_iterations=3)
        self.assertTrue(check_budget(budget, elapsed_s=0, iterations=2, tool_calls=0).ok)
        verdict = check_budget(budget, elapsed_s=0, iterations=3, tool_calls=0)
        self.assertEqual(verdict.kind, ITERATIONS)
        self.assertEqual(verdict.reason, "max_iterations_reached")

    def test_tool_and_token_ceilings(self) -> None:
        budget = RunBudget(max_tool_calls=2, token_budget=100)
        self.assertEqual(check_budget(budget, elapsed_s=0, iterations=0, tool_calls=2).kind, TOOL_CALLS)
        self.assertEqual(check_budget(budget, elapsed_s=0, iterations=0, tool_calls=0, tokens_used=100).kind, TOKENS)

    def test_tracker_counts_and_response_timeout(self) -> None:
        clock = _Clock()
        tracker = BudgetTracker(RunBudget(max_wall_clock_s=60, max_response_s=45, max_verify_failures=1), clock=clock)
        tracker.record_iteration()
        tracker.record_tool_call(mutating=True)
        tracker.record_tool_call()
        self.assertEqual((tracker.iterations, tracker.tool_calls, tracker.write_calls), (1, 2, 1))

        self.assertEqual(tracker.response_timeout_s(), 45.0)
        clock.now += 30
        self.assertEqual(tracker.response_timeout_s(), 30.0)
        clock.now += 40
        self.assertEqual(tracker.response_timeout_s(), 0.0)
        self.assertEqual(tracker.check().kind, WALL_TIME)

        tracker.record_verify_failure()
        self.assertFalse(tracker.verify_failures_exceeded())
        tracker.record_verify_failure()
        self.assertTrue(tracker.verify_failures_exceeded())

    def test_token_budget_uses_message_estimate(self) -> None:
        tracker = BudgetTracker(RunBudget(token_budget=50), clock=_Clock())
        self.assertTrue(tracker.check([ChatMessage.user("hi")]).ok)
        verdict = tracker.check([ChatMessage.user("x" * 400)])
        self.assertEqual(verdict.kind, TOKENS)

    def test_context_limits_by_model_family(self) -> None:
        self.assertEqual(approximate_model_context_limit("claude-sonnet-4-5"), 200_000)
        self.assertEqual(approximate_model_context_limit("gemini-2.5-pro"), 1_000_000)
        self.assertEqual(approximate_model_context_limit("llama3"), 64_000)


if __name__ == "__main__":
    unittest.main()
