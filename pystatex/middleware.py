"""
基於 PyStateX 的中介軟體定義模組。

此模組提供各種中介軟體，用於在動作分發過程中插入自定義邏輯，
實現非同步執行、日誌記錄、錯誤處理、性能監控、節流、防抖、
過濾、轉換、批次與條件分發等功能。

每個中介軟體都遵循同一個協定 ``middleware(store, action, next_dispatch)``：
只有呼叫 ``next_dispatch(action)`` 才會讓流程往內層推進，不呼叫即吞掉該 action。
"""

import asyncio
import contextlib
import datetime
import functools
import inspect
import logging
import threading
import time
import traceback
from typing import TYPE_CHECKING, Any, Callable, Dict, Generator, List, Optional, Set

from .actions import Action, AsyncAction, BatchAction
from .errors import ErrorHandler, MiddlewareError, global_error_handler
from .immutable_utils import to_dict
from .types import ActionContext, NextDispatch, Sink

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger("pystatex")


def _kind(action: Any) -> Any:
    return getattr(action, "type", type(action).__name__)


# ———— Base Middleware ————
class BaseMiddleware:
    """
    基礎中介類，定義所有中介可能實現的鉤子。

    中介軟體可以介入動作分發的流程，在動作到達 Reducer 前、
    動作處理完成後或出現錯誤時執行自定義邏輯。
    子類可以只覆寫鉤子，也可以直接覆寫 ``__call__`` 取得完整控制權。
    """

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        with self.action_context(action, store.state) as context:
            next_dispatch(action)
            context['next_state'] = store.state

    def on_next(self, action: Any, prev_state: Any) -> None:
        """
        在 action 往內層傳遞之前調用。

        Args:
            action: 正在 dispatch 的 Action
            prev_state: dispatch 之前的 store.state
        """
        pass

    def on_complete(self, next_state: Any, action: Any) -> None:
        """
        在內層（最終為 reducer）處理完 action 之後調用。

        Args:
            next_state: dispatch 之後的最新 store.state
            action: 剛剛 dispatch 的 Action
        """
        pass

    def on_error(self, error: Exception, action: Any) -> None:
        """
        如果內層處理過程中拋出異常，則調用此鉤子。

        Args:
            error: 拋出的異常
            action: 導致異常的 Action
        """
        pass

    def teardown(self) -> None:
        """
        當 Store 釋放資源時調用，用於清理中介軟體持有的資源（計時器、任務等）。
        """
        pass

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        """
        提供一個上下文管理器來處理 action 分發的生命週期。

        這個方法使用現有的 on_next、on_complete 和 on_error 鉤子，
        但以更優雅的上下文管理器形式提供。

        Args:
            action: 要分發的 Action
            prev_state: 分發前的狀態

        Yields:
            ActionContext: 上下文字典，可用於在上下文內部與外部之間傳遞數據
        """
        context: ActionContext = {
            'action': action,
            'prev_state': prev_state,
            'next_state': None,
            'error': None,
        }
        self.on_next(action, prev_state)
        try:
            yield context
        except Exception as err:
            context['error'] = err
            self.on_error(err, action)
            raise
        self.on_complete(context['next_state'], action)


# ———— AsyncMiddleware ————
class AsyncMiddleware(BaseMiddleware):
    """
    執行 AsyncAction 的延遲工作，並完整消耗該 action（不會呼叫 next_dispatch）。

    - 協程工作：若目前有執行中的 asyncio 事件迴圈，排程為該迴圈的 Task；
      否則在背景 daemon 執行緒中以 ``asyncio.run`` 執行。
    - 同步工作：直接在 dispatch 呼叫中執行。

    工作中的錯誤絕不會拋回 dispatch 呼叫端，而是交給 error_handler 與 on_failure。

    範例:
        ```python
        async def fetch(store):
            store.dispatch(fetch_start())
            data = await api.get()
            store.dispatch(fetch_success(data))

        store.dispatch(AsyncAction(fetch))
        ```
    """

    def __init__(
        self,
        on_failure: Optional[Callable[[BaseException, AsyncAction], None]] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        """
        初始化 AsyncMiddleware。

        Args:
            on_failure: 非同步工作失敗時的回調，接收 (error, action)
            error_handler: 錯誤處理器，預設為全域錯誤處理器
        """
        self.on_failure = on_failure
        self.error_handler = error_handler or global_error_handler
        self._tasks: Set["asyncio.Future[Any]"] = set()
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        if not isinstance(action, AsyncAction):
            next_dispatch(action)
            return

        try:
            result = action.execute(store)
        except Exception as err:
            self._report(err, action)
            return

        if inspect.isawaitable(result):
            self._schedule(result, action)

    def _schedule(self, awaitable: Any, action: AsyncAction) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(
                target=self._run_in_thread,
                args=(awaitable, action),
                name=f"pystatex-async-{action.name}",
                daemon=True,
            )
            with self._lock:
                self._threads.add(thread)
            thread.start()
            return

        task = asyncio.ensure_future(awaitable)
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(functools.partial(self._on_task_done, action))

    def _on_task_done(self, action: AsyncAction, task: "asyncio.Future[Any]") -> None:
        with self._lock:
            self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._report(error, action)

    def _run_in_thread(self, awaitable: Any, action: AsyncAction) -> None:
        try:
            asyncio.run(self._run_until_drained(awaitable))
        except Exception as err:
            self._report(err, action)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    async def _run_until_drained(self, awaitable: Any) -> None:
        await awaitable
        # 工作中再次分發的 AsyncAction 會排程在這個迴圈上，需等它們結束後才關閉迴圈
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                tasks = [task for task in self._tasks if task.get_loop() is loop]
            if not tasks:
                return
            await asyncio.wait(tasks)

    def _report(self, error: BaseException, action: AsyncAction) -> None:
        self.error_handler.handle(error, action)
        if self.on_failure is None:
            return
        try:
            self.on_failure(error, action)
        except Exception:
            logger.exception("on_failure callback failed for %r", action)

    @property
    def pending(self) -> int:
        """尚未完成的非同步工作數量（事件迴圈任務與背景執行緒）。"""
        with self._lock:
            return len(self._tasks) + len(self._threads)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        等待所有背景執行緒上的工作完成。

        Args:
            timeout: 最長等待秒數，None 表示無限等待

        Returns:
            是否所有背景工作都已完成
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        with self._lock:
            return not self._threads

    def teardown(self) -> None:
        """取消所有尚未完成的事件迴圈任務。背景執行緒無法中斷，但其後續 dispatch 會被已釋放的 Store 忽略。"""
        with self._lock:
            tasks = list(self._tasks)
            self._tasks.clear()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        for task in tasks:
            loop = task.get_loop()
            if loop is running:
                task.cancel()
            elif not loop.is_closed():
                try:
                    loop.call_soon_threadsafe(task.cancel)
                except RuntimeError:
                    # 迴圈在檢查之後才關閉，任務已隨迴圈結束
                    continue


# ———— LoggerMiddleware ————
class LoggerMiddleware(BaseMiddleware):
    """
    日誌中介，記錄每個 action 發送前和發送後的 state 以及耗時。

    使用場景:
    - 偵錯時需要觀察每次 state 的變化。
    - 確保 action 的執行順序正確。
    """

    def __init__(self, sink: Optional[Sink] = None, log_state: bool = True) -> None:
        """
        初始化 LoggerMiddleware。

        Args:
            sink: 日誌輸出函數，預設為 print
            log_state: 是否輸出 dispatch 前後的 state
        """
        self.sink = sink or print
        self.log_state = log_state

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        context: ActionContext = {
            'action': action,
            'prev_state': prev_state,
            'next_state': None,
            'error': None,
        }
        self.on_next(action, prev_state)
        start_time = time.perf_counter()
        try:
            yield context
        except Exception as err:
            context['error'] = err
            self.on_error(err, action)
            raise
        context['elapsed_ms'] = (time.perf_counter() - start_time) * 1000
        self.on_complete(context['next_state'], action)
        self.sink(f"⏱️ duration of {_kind(action)}: {context['elapsed_ms'] * 1000:.0f}μs")

    def on_next(self, action: Action[Any], prev_state: Any) -> None:
        self.sink(f"▶️ dispatching {action!r}")
        if self.log_state:
            self.sink(f"🔄 state before {_kind(action)}: {to_dict(prev_state)}")

    def on_complete(self, next_state: Any, action: Action[Any]) -> None:
        if self.log_state:
            self.sink(f"✅ state after {_kind(action)}: {to_dict(next_state)}")

    def on_error(self, error: Exception, action: Action[Any]) -> None:
        self.sink(f"❌ error in {_kind(action)}: {error}")


class TimestampedLoggerMiddleware(LoggerMiddleware):
    """
    帶時間戳的日誌中介，以框線區塊輸出每次 dispatch 的記錄。
    """

    def __init__(self, sink: Optional[Sink] = None, log_state: bool = True, log_performance: bool = True) -> None:
        super().__init__(sink=sink, log_state=log_state)
        self.log_performance = log_performance

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        context: ActionContext = {
            'action': action,
            'prev_state': prev_state,
            'next_state': None,
            'error': None,
            'timestamp': datetime.datetime.now().isoformat(),
        }
        self.sink("┌─────────────────────────────────────────")
        self.sink(f"│ ⏰ {context['timestamp']}")
        self.sink(f"│ 🎬 Action: {action!r}")
        if self.log_state:
            self.sink(f"│ 📦 State Before: {to_dict(prev_state)}")
        start_time = time.perf_counter()
        try:
            yield context
        except Exception as err:
            context['error'] = err
            self.sink(f"│ ❌ Error: {err}")
            self.sink("└─────────────────────────────────────────")
            raise
        elapsed_us = (time.perf_counter() - start_time) * 1_000_000
        if self.log_state:
            self.sink(f"│ 📦 State After: {to_dict(context['next_state'])}")
        if self.log_performance:
            self.sink(f"│ ⏱️ Duration: {elapsed_us:.0f}μs")
        self.sink("└─────────────────────────────────────────")


# ———— PerformanceMonitorMiddleware ————
class PerformanceMonitorMiddleware(BaseMiddleware):
    """
    性能監控中間件，記錄 action 處理時間，超過閾值時發出警告。
    預設閾值 16ms（60fps 的一幀）。
    """

    def __init__(
        self,
        threshold_ms: float = 16,
        log_all: bool = False,
        on_slow: Optional[Callable[[Action[Any], float], None]] = None,
        sink: Optional[Sink] = None,
    ):
        """
        初始化 PerformanceMonitorMiddleware。

        Args:
            threshold_ms: 性能警告閾值，單位為毫秒，預設為 16 毫秒
            log_all: 是否記錄所有 action 的耗時，預設為 False (只記錄超過閾值的)
            on_slow: 超過閾值時的回調，接收 (action, elapsed_ms)
            sink: 訊息輸出函數，預設為 print
        """
        self.threshold_ms = threshold_ms
        self.log_all = log_all
        self.on_slow = on_slow
        self.sink = sink or print
        self.metrics: Dict[Any, List[float]] = {}
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def action_context(self, action: Any, prev_state: Any) -> Generator[ActionContext, None, None]:
        context: ActionContext = {
            'action': action,
            'prev_state': prev_state,
            'next_state': None,
            'error': None,
        }
        start_time = time.perf_counter()
        try:
            yield context
        except Exception as err:
            context['error'] = err
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            self.sink(f"❌ Action {_kind(action)} failed after {elapsed_ms:.2f}ms: {err}")
            raise
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        context['elapsed_ms'] = elapsed_ms
        self._record(action, elapsed_ms)

    def _record(self, action: Any, elapsed_ms: float) -> None:
        action_type = _kind(action)
        with self._lock:
            self.metrics.setdefault(action_type, []).append(elapsed_ms)
        if self.log_all:
            self.sink(f"⏱️ Performance: Action {action_type} took {elapsed_ms:.2f}ms")
        if elapsed_ms > self.threshold_ms:
            self.sink(f"⚠️ Slow action detected: {action!r} took {elapsed_ms:.2f}ms (threshold {self.threshold_ms}ms)")
            if self.on_slow is not None:
                self.on_slow(action, elapsed_ms)

    def get_metrics(self) -> Dict[Any, Dict[str, float]]:
        """
        獲取性能指標統計信息。

        Returns:
            以 action 類型為鍵，包含 avg / max / min / count 的字典
        """
        result = {}
        with self._lock:
            items = [(k, list(v)) for k, v in self.metrics.items()]
        for action_type, times in items:
            if not times:
                continue
            result[action_type] = {
                'avg': sum(times) / len(times),
                'max': max(times),
                'min': min(times),
                'count': len(times),
            }
        return result


# ———— ErrorMiddleware ————
class ErrorMiddleware(BaseMiddleware):
    """
    在失敗邊界內呼叫內層，捕獲異常並回報，且不再往外拋出。

    失敗之前已提交的狀態保持不變，Store 仍可繼續使用。
    應放在可能失敗的中介軟體（或 reducer）之前。
    """

    def __init__(
        self,
        on_failure: Optional[Callable[[Exception, Action[Any], str], None]] = None,
        sink: Optional[Sink] = None,
    ):
        """
        初始化 ErrorMiddleware。

        Args:
            on_failure: 失敗回調，接收 (error, action, traceback 文字)
            sink: 訊息輸出函數，預設為 print
        """
        self.on_failure = on_failure
        self.sink = sink or print
        self.error_history: List[Dict[str, Any]] = []

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        try:
            next_dispatch(action)
        except Exception as err:
            self.on_error(err, action)

    def on_error(self, error: Exception, action: Action[Any]) -> None:
        trace = traceback.format_exc()
        self.error_history.append({
            "timestamp": time.time(),
            "error_type": error.__class__.__name__,
            "message": str(error),
            "action": _kind(action),
            "traceback": trace,
        })
        self.sink(f"❌ Error in reducer for action {action!r}: {error}")
        self.sink(trace)
        if self.on_failure is None:
            return
        try:
            self.on_failure(error, action, trace)
        except Exception:
            logger.exception("on_failure callback failed for %r", action)


# ———— ThrottleMiddleware ————
class ThrottleMiddleware(BaseMiddleware):
    """
    對同一 action type 做節流：距上次放行超過 duration 秒才再次放行。

    同一類型第一次出現總是放行；被節流的 action 直接丟棄。
    """

    def __init__(
        self,
        duration: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_throttled: Optional[Callable[[Action[Any]], None]] = None,
        sink: Optional[Sink] = None,
    ) -> None:
        """
        初始化 ThrottleMiddleware。

        Args:
            duration: 節流間隔，單位秒，預設 1 秒
            clock: 時間來源，預設 time.monotonic
            on_throttled: action 被節流時的回調
            sink: 訊息輸出函數，預設為 print
        """
        self.duration = duration
        self.clock = clock
        self.on_throttled = on_throttled
        self.sink = sink or print
        self._last_executed: Dict[Any, float] = {}
        self._lock = threading.Lock()

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        key = _kind(action)
        now = self.clock()
        with self._lock:
            last = self._last_executed.get(key)
            allowed = last is None or now - last > self.duration
            if allowed:
                self._last_executed[key] = now

        if allowed:
            next_dispatch(action)
            return

        self.sink(f"🚫 Action throttled: {action!r}")
        if self.on_throttled is not None:
            self.on_throttled(action)

    def teardown(self) -> None:
        with self._lock:
            self._last_executed.clear()


# ———— DebounceMiddleware ————
class DebounceMiddleware(BaseMiddleware):
    """
    對同一 action type 做防抖，interval 秒內沒有新的同類 action 才 dispatch 最後一條。

    使用場景:
    - 當需要限制高頻率的 action，例如用戶快速點擊按鈕或輸入框事件。
    """

    def __init__(self, interval: float = 0.3, error_handler: Optional[ErrorHandler] = None) -> None:
        """
        初始化 DebounceMiddleware。

        Args:
            interval: 防抖間隔，單位秒，預設 0.3 秒
            error_handler: 計時器執行緒上發生錯誤時使用的錯誤處理器
        """
        self.interval = interval
        self.error_handler = error_handler or global_error_handler
        self._timers: Dict[Any, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        key = _kind(action)
        with self._lock:
            if self._closed:
                return
            # 取消上一次定時
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(self.interval, self._fire, args=(key, action, next_dispatch))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def _fire(self, key: Any, action: Action[Any], next_dispatch: NextDispatch) -> None:
        with self._lock:
            # 已被新的 action 取代或已清理
            if self._closed or self._timers.get(key) is not threading.current_thread():
                return
            del self._timers[key]
        try:
            next_dispatch(action)
        except Exception as err:
            self.error_handler.handle(err, action)

    @property
    def pending(self) -> List[Any]:
        """仍在等待中的 action 類型。"""
        with self._lock:
            return list(self._timers)

    def cancel(self, action_type: Any) -> bool:
        """取消指定類型的待發 action，返回是否真的取消了。"""
        with self._lock:
            timer = self._timers.pop(action_type, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def teardown(self) -> None:
        """
        清理所有計時器。
        """
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


# ———— FilterMiddleware ————
class FilterMiddleware(BaseMiddleware):
    """只放行 predicate(action) 為真的 action，其餘丟棄。"""

    def __init__(
        self,
        predicate: Callable[[Action[Any]], bool],
        on_filtered: Optional[Callable[[Action[Any]], None]] = None,
        sink: Optional[Sink] = None,
    ) -> None:
        self.predicate = predicate
        self.on_filtered = on_filtered
        self.sink = sink or print

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        if self.predicate(action):
            next_dispatch(action)
            return
        self.sink(f"🚫 Action filtered: {action!r}")
        if self.on_filtered is not None:
            self.on_filtered(action)


# ———— TransformMiddleware ————
class _Drop:
    def __repr__(self) -> str:
        return "DROP"


# transform 返回此值時，action 會被丟棄
DROP = _Drop()


class TransformMiddleware(BaseMiddleware):
    """
    在往內層傳遞前改寫 action。

    transform 的返回值:
    - 新的 Action: 以新 action 取代原 action 往下傳遞
    - None: 不改寫，原 action 往下傳遞
    - DROP: 明確丟棄該 action
    - 其他返回值: 拋出 MiddlewareError
    """

    def __init__(self, transform: Callable[[Action[Any]], Any]) -> None:
        self.transform = transform

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        transformed = self.transform(action)
        if transformed is DROP:
            return
        if transformed is None:
            next_dispatch(action)
            return
        if not isinstance(transformed, Action):
            raise MiddlewareError(
                f"transform must return an Action, None or DROP, got {type(transformed).__name__}",
                middleware_name=type(self).__name__,
                action_type=_kind(action),
            )
        next_dispatch(transformed)


# ———— BatchMiddleware ————
class BatchMiddleware(BaseMiddleware):
    """
    展開 BatchAction：每個子 action 都透過完整的 ``store.dispatch`` 重新進入中介鏈，
    依列表順序記錄與處理。其他 action 直接放行。
    """

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        if not isinstance(action, BatchAction):
            next_dispatch(action)
            return
        for batched_action in action.actions:
            store.dispatch(batched_action)


# ———— ConditionalMiddleware ————
class ConditionalMiddleware(BaseMiddleware):
    """
    依據呼叫當下的 store.state 與 action 判斷是否放行。
    """

    def __init__(
        self,
        condition: Callable[[Any, Action[Any]], bool],
        on_rejected: Optional[Callable[[Action[Any]], None]] = None,
        sink: Optional[Sink] = None,
    ) -> None:
        self.condition = condition
        self.on_rejected = on_rejected
        self.sink = sink or print

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        if self.condition(store.state, action):
            next_dispatch(action)
            return
        self.sink(f"🚫 Action rejected by condition: {action!r}")
        if self.on_rejected is not None:
            self.on_rejected(action)


# ———— DebugOnlyMiddleware ————
class DebugOnlyMiddleware(BaseMiddleware):
    """只在 ``__debug__`` 為真（未使用 -O 執行）時啟用被包裝的中介軟體，否則直接放行。"""

    def __init__(self, middleware: Callable[..., None]) -> None:
        self.middleware = middleware

    def __call__(self, store: "Store[Any]", action: Action[Any], next_dispatch: NextDispatch) -> None:
        if __debug__:
            self.middleware(store, action, next_dispatch)
        else:
            next_dispatch(action)

    def teardown(self) -> None:
        teardown = getattr(self.middleware, "teardown", None)
        if teardown is not None:
            teardown()
