"""內建中介軟體的測試。"""
import time

import pytest
from immutables import Map

from pystatex import (
    DROP, Action, BaseMiddleware, BatchMiddleware, ConditionalMiddleware, DebounceMiddleware,
    DebugOnlyMiddleware, ErrorMiddleware, FilterMiddleware, LoggerMiddleware, MiddlewareError,
    PerformanceMonitorMiddleware, ReducerError, ThrottleMiddleware, TimestampedLoggerMiddleware,
    TransformMiddleware, batch,
)

from conftest import Recorder, decrement, explode, increment, reset


class TestBaseMiddleware:
    def test_hooks_wrap_the_inner_chain(self, make_store):
        events = []

        class Hooks(BaseMiddleware):
            def on_next(self, action, prev_state):
                events.append(("next", action.type, prev_state["counter"]))

            def on_complete(self, next_state, action):
                events.append(("complete", action.type, next_state["counter"]))

            def on_error(self, error, action):
                events.append(("error", action.type, type(error).__name__))

        s = make_store(Hooks)
        s.dispatch(increment(2))
        with pytest.raises(ReducerError):
            s.dispatch(explode())

        assert events == [
            ("next", increment.type, 0),
            ("complete", increment.type, 2),
            ("next", explode.type, 2),
            ("error", explode.type, "ReducerError"),
        ]


class TestLoggerMiddleware:
    def test_logs_action_states_and_duration(self, make_store):
        lines = []
        s = make_store(LoggerMiddleware(sink=lines.append))

        s.dispatch(increment(1))

        assert lines[0].startswith("▶️ dispatching Action(")
        assert lines[1] == f"🔄 state before {increment.type}: {{'counter': 0}}"
        assert lines[2] == f"✅ state after {increment.type}: {{'counter': 1}}"
        assert lines[3].startswith(f"⏱️ duration of {increment.type}:")
        assert lines[3].endswith("μs")

    def test_state_logging_can_be_disabled(self, make_store):
        lines = []
        s = make_store(LoggerMiddleware(sink=lines.append, log_state=False))

        s.dispatch(increment(1))

        assert len(lines) == 2
        assert not any("state" in line for line in lines)

    def test_failure_is_logged_and_rethrown(self, make_store):
        lines = []
        s = make_store(LoggerMiddleware(sink=lines.append, log_state=False))

        with pytest.raises(ReducerError):
            s.dispatch(explode())

        assert lines[-1].startswith(f"❌ error in {explode.type}:")

    def test_timestamped_logger_prints_a_block(self, make_store):
        lines = []
        s = make_store(TimestampedLoggerMiddleware(sink=lines.append))

        s.dispatch(increment(1))

        assert lines[0].startswith("┌")
        assert lines[1].startswith("│ ⏰ ")
        assert lines[2].startswith("│ 🎬 Action: Action(")
        assert lines[3] == "│ 📦 State Before: {'counter': 0}"
        assert lines[4] == "│ 📦 State After: {'counter': 1}"
        assert lines[5].startswith("│ ⏱️ Duration: ")
        assert lines[-1].startswith("└")

    def test_timestamped_logger_closes_block_on_error(self, make_store):
        lines = []
        s = make_store(TimestampedLoggerMiddleware(sink=lines.append, log_state=False))

        with pytest.raises(ReducerError):
            s.dispatch(explode())

        assert lines[-2].startswith("│ ❌ Error: ")
        assert lines[-1].startswith("└")


class TestPerformanceMonitorMiddleware:
    def test_slow_actions_are_reported(self, make_store):
        slow = []
        lines = []

        def sleepy(store, action, next_dispatch):
            if action.type == decrement.type:
                time.sleep(0.03)
            next_dispatch(action)

        monitor = PerformanceMonitorMiddleware(
            threshold_ms=10, on_slow=lambda a, ms: slow.append((a.type, ms)), sink=lines.append
        )
        s = make_store(monitor, sleepy)

        s.dispatch(increment(1))
        s.dispatch(decrement(1))

        assert [kind for kind, _ in slow] == [decrement.type]
        assert slow[0][1] >= 10
        assert any(line.startswith("⚠️ Slow action detected") for line in lines)

    def test_metrics_are_collected_per_kind(self, make_store):
        monitor = PerformanceMonitorMiddleware(threshold_ms=1000, log_all=True, sink=lambda _: None)
        s = make_store(monitor)

        for _ in range(3):
            s.dispatch(increment(1))
        s.dispatch(reset())

        metrics = monitor.get_metrics()
        assert metrics[increment.type]["count"] == 3
        assert metrics[reset.type]["count"] == 1
        assert metrics[increment.type]["min"] <= metrics[increment.type]["avg"] <= metrics[increment.type]["max"]


class TestErrorMiddleware:
    def test_failure_is_absorbed_and_store_stays_usable(self, make_store):
        failures = []
        lines = []
        guard = ErrorMiddleware(on_failure=lambda e, a, tb: failures.append((e, a, tb)), sink=lines.append)
        s = make_store(guard)
        s.dispatch(increment(3))

        s.dispatch(explode())
        s.dispatch(increment(1))

        assert s.state["counter"] == 4
        error, action, trace = failures[0]
        assert isinstance(error, ReducerError)
        assert action.type == explode.type
        assert "ValueError: boom" in trace
        assert guard.error_history[0]["error_type"] == "ReducerError"
        assert guard.error_history[0]["action"] == explode.type
        assert lines[0].startswith("❌ Error in reducer for action")

    def test_failing_callback_does_not_escape(self, make_store):
        def broken(error, action, trace):
            raise RuntimeError("callback broke")

        s = make_store(ErrorMiddleware(on_failure=broken, sink=lambda _: None))

        s.dispatch(explode())

        assert s.state["counter"] == 0


class TestThrottleMiddleware:
    def test_same_kind_within_window_is_dropped(self, make_store):
        now = [0.0]
        throttled = []
        s = make_store(ThrottleMiddleware(
            duration=1.0, clock=lambda: now[0], on_throttled=throttled.append, sink=lambda _: None
        ))

        s.dispatch(increment(1))
        now[0] = 0.4
        s.dispatch(increment(1))
        now[0] = 1.2
        s.dispatch(increment(1))

        assert s.state["counter"] == 2
        assert len(throttled) == 1
        assert len(s.action_history) == 3

    def test_kinds_are_throttled_independently(self, make_store):
        s = make_store(ThrottleMiddleware(duration=1.0, clock=lambda: 0.0, sink=lambda _: None))

        s.dispatch(increment(5))
        s.dispatch(decrement(2))
        s.dispatch(decrement(2))

        assert s.state["counter"] == 3


class TestDebounceMiddleware:
    def test_only_last_action_of_a_burst_is_applied(self, make_store):
        debounce = DebounceMiddleware(interval=0.05)
        s = make_store(debounce)

        for amount in (1, 2, 3):
            s.dispatch(increment(amount))

        assert s.state["counter"] == 0
        assert debounce.pending == [increment.type]
        time.sleep(0.25)
        assert s.state["counter"] == 3
        assert debounce.pending == []
        assert len(s.action_history) == 3

    def test_kinds_are_debounced_independently(self, make_store):
        s = make_store(DebounceMiddleware(interval=0.05))

        s.dispatch(increment(10))
        s.dispatch(decrement(4))
        time.sleep(0.25)

        assert s.state["counter"] == 6

    def test_cancel_drops_pending_action(self, make_store):
        debounce = DebounceMiddleware(interval=0.05)
        s = make_store(debounce)

        s.dispatch(increment(1))

        assert debounce.cancel(increment.type)
        assert not debounce.cancel(increment.type)
        time.sleep(0.15)
        assert s.state["counter"] == 0

    def test_dispose_cancels_timers(self, make_store):
        debounce = DebounceMiddleware(interval=0.05)
        s = make_store(debounce)

        s.dispatch(increment(1))
        s.dispose()
        time.sleep(0.15)

        assert s.state["counter"] == 0
        assert debounce.pending == []


class TestFilterMiddleware:
    def test_rejected_actions_are_dropped(self, make_store):
        filtered = []
        s = make_store(FilterMiddleware(
            lambda a: a.type != decrement.type, on_filtered=filtered.append, sink=lambda _: None
        ))

        s.dispatch(increment(2))
        s.dispatch(decrement(1))

        assert s.state["counter"] == 2
        assert [a.type for a in filtered] == [decrement.type]


class TestTransformMiddleware:
    def _transform(self, action):
        if action.type == increment.type:
            return increment(action.payload * 2)
        if action.type == decrement.type:
            return DROP
        return None

    def test_replaces_drops_or_forwards(self, make_store):
        recorder = Recorder()
        s = make_store(TransformMiddleware(self._transform), recorder)

        s.dispatch(increment(3))
        s.dispatch(decrement(1))
        s.dispatch(reset())

        assert s.state["counter"] == 0
        assert [a.payload for a in recorder.actions] == [6, None]
        # 日誌記錄的是改寫前的 action
        assert s.action_history[0].payload == 3

    def test_non_action_result_is_rejected(self, make_store):
        recorder = Recorder()
        s = make_store(TransformMiddleware(lambda action: {"type": action.type}), recorder)

        with pytest.raises(MiddlewareError) as excinfo:
            s.dispatch(increment(1))

        assert excinfo.value.details["middleware_name"] == "TransformMiddleware"
        assert recorder.actions == []
        assert s.state["counter"] == 0


class TestBatchMiddleware:
    def test_sub_actions_are_dispatched_in_order(self, make_store):
        recorder = Recorder()
        s = make_store(BatchMiddleware(), recorder)

        s.dispatch(batch(increment(1), increment(2), decrement(1)))

        assert s.state["counter"] == 2
        assert recorder.kinds == [increment.type, increment.type, decrement.type]
        assert [a.type for a in s.action_history][1:] == [increment.type, increment.type, decrement.type]
        assert s.action_history[0].type == "[Batch] Dispatch"

    def test_batch_without_middleware_is_a_no_op(self, store):
        store.dispatch(batch(increment(1)))

        assert store.state["counter"] == 0


class TestConditionalMiddleware:
    def test_condition_reads_current_state(self, make_store):
        rejected = []
        s = make_store(ConditionalMiddleware(
            lambda state, action: action.type != increment.type or state["counter"] < 2,
            on_rejected=rejected.append,
            sink=lambda _: None,
        ))

        for _ in range(4):
            s.dispatch(increment(1))
        s.dispatch(decrement(1))

        assert s.state["counter"] == 1
        assert len(rejected) == 2


class TestDebugOnlyMiddleware:
    def test_wrapped_middleware_runs_in_debug_mode(self, make_store):
        recorder = Recorder()
        s = make_store(DebugOnlyMiddleware(recorder))

        s.dispatch(increment(1))

        assert recorder.kinds == [increment.type]
        assert s.state["counter"] == 1

    def test_teardown_is_forwarded(self, make_store):
        debounce = DebounceMiddleware(interval=0.05)
        s = make_store(DebugOnlyMiddleware(debounce))

        s.dispatch(increment(1))
        s.dispose()
        time.sleep(0.15)

        assert s.state["counter"] == 0


def test_middleware_may_dispatch_plain_actions(make_store):
    def announce(store, action, next_dispatch):
        next_dispatch(action)
        if action.type == reset.type:
            store.dispatch(Action("[Audit] Reset"))

    s = make_store(announce)
    s.dispatch(reset())

    assert [a.type for a in s.action_history] == [reset.type, "[Audit] Reset"]
    assert s.state == Map(counter=0)
