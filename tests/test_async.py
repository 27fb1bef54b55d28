"""AsyncMiddleware 的測試：事件迴圈路徑、背景執行緒路徑與錯誤回報。"""
import asyncio

from pystatex import (
    AsyncAction, AsyncMiddleware, BatchMiddleware, ErrorHandler, PyStateXError, async_action, batch,
)

from conftest import Recorder, increment


def _quiet_handler(received):
    handler = ErrorHandler(log_to_console=False)
    handler.register_handler(lambda error, action: received.append((error, action)))
    return handler


async def _drain(middleware):
    while middleware.pending:
        await asyncio.sleep(0.01)


class TestWithoutMiddleware:
    def test_async_action_is_inert(self, store):
        calls = []

        store.dispatch(AsyncAction(lambda s: calls.append(s)))

        assert calls == []
        assert store.state["counter"] == 0
        assert len(store.action_history) == 1


class TestSynchronousWork:
    def test_runs_inline(self, make_store):
        recorder = Recorder()
        s = make_store(AsyncMiddleware(), recorder)

        s.dispatch(AsyncAction(lambda store: store.dispatch(increment(2))))

        assert s.state["counter"] == 2
        # AsyncAction 本身不會到達內層
        assert recorder.kinds == [increment.type]

    def test_synchronous_failure_is_reported_not_raised(self, make_store):
        received, failures = [], []
        s = make_store(AsyncMiddleware(
            on_failure=lambda e, a: failures.append(a), error_handler=_quiet_handler(received)
        ))

        def broken(store):
            raise KeyError("missing")

        action = AsyncAction(broken)
        s.dispatch(action)

        assert failures == [action]
        error, reported_action = received[0]
        assert isinstance(error.__cause__, KeyError)
        assert reported_action is action


class TestEventLoop:
    def test_coroutine_is_scheduled_on_running_loop(self, make_store):
        middleware = AsyncMiddleware()
        recorder = Recorder()
        s = make_store(middleware, recorder)

        async def fetch(store):
            await asyncio.sleep(0)
            store.dispatch(increment(5))

        async def main():
            s.dispatch(AsyncAction(fetch))
            assert middleware.pending == 1
            assert s.state["counter"] == 0
            await _drain(middleware)

        asyncio.run(main())

        assert s.state["counter"] == 5
        assert recorder.kinds == [increment.type]

    def test_coroutine_failure_goes_to_handlers(self, make_store):
        received, failures = [], []
        middleware = AsyncMiddleware(
            on_failure=lambda e, a: failures.append(e), error_handler=_quiet_handler(received)
        )
        s = make_store(middleware)

        async def fetch(store):
            await asyncio.sleep(0)
            raise RuntimeError("offline")

        async def main():
            s.dispatch(AsyncAction(fetch))
            await _drain(middleware)

        asyncio.run(main())

        assert isinstance(failures[0], RuntimeError)
        error, _ = received[0]
        assert isinstance(error, PyStateXError)
        assert error.details["original_type"] == "RuntimeError"
        assert s.state["counter"] == 0

    def test_dispose_cancels_pending_tasks(self, make_store):
        middleware = AsyncMiddleware()
        s = make_store(middleware)
        events = []

        async def slow(store):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                events.append("cancelled")
                raise
            store.dispatch(increment(1))

        async def main():
            s.dispatch(AsyncAction(slow))
            await asyncio.sleep(0)
            s.dispose()
            await asyncio.sleep(0.01)

        asyncio.run(main())

        assert events == ["cancelled"]
        assert middleware.pending == 0
        assert s.state["counter"] == 0


class TestWorkerThread:
    def test_coroutine_runs_without_a_loop(self, make_store):
        middleware = AsyncMiddleware()
        s = make_store(middleware)

        @async_action
        async def load(store, amount):
            await asyncio.sleep(0.01)
            store.dispatch(increment(amount))

        s.dispatch(load(7))

        assert middleware.join(timeout=2)
        assert s.state["counter"] == 7
        assert middleware.pending == 0

    def test_nested_async_actions_finish_before_thread_exits(self, make_store):
        middleware = AsyncMiddleware()
        s = make_store(middleware)

        async def inner(store):
            await asyncio.sleep(0.01)
            store.dispatch(increment(10))

        async def outer(store):
            store.dispatch(increment(1))
            store.dispatch(AsyncAction(inner))

        s.dispatch(AsyncAction(outer))

        assert middleware.join(timeout=2)
        assert s.state["counter"] == 11

    def test_failure_on_worker_thread_is_reported(self, make_store):
        received = []
        middleware = AsyncMiddleware(error_handler=_quiet_handler(received))
        s = make_store(middleware)

        async def fetch(store):
            raise ValueError("bad response")

        s.dispatch(AsyncAction(fetch))

        assert middleware.join(timeout=2)
        error, action = received[0]
        assert isinstance(error.__cause__, ValueError)
        assert action.name == "fetch"


def test_batch_may_contain_async_actions(make_store):
    s = make_store(BatchMiddleware(), AsyncMiddleware())

    s.dispatch(batch(increment(1), AsyncAction(lambda store: store.dispatch(increment(10)))))

    assert s.state["counter"] == 11
    assert [a.type for a in s.action_history] == [
        "[Batch] Dispatch", increment.type, "[Async] Execute", increment.type,
    ]


def test_teardown_tolerates_a_loop_closing_concurrently():
    class ClosingLoop:
        def is_closed(self):
            return False

        def call_soon_threadsafe(self, callback):
            raise RuntimeError("Event loop is closed")

    class StrandedTask:
        def get_loop(self):
            return ClosingLoop()

    middleware = AsyncMiddleware()
    middleware._tasks.add(StrandedTask())

    middleware.teardown()

    assert middleware.pending == 0
