import functools
import inspect
import threading
from collections import deque
from typing import Any, Callable, Deque, Generic, Iterable, Optional, Tuple

from reactivex import Observable
from reactivex import operators as ops
from reactivex.abc import DisposableBase
from reactivex.subject import BehaviorSubject

from .actions import Action, init_store
from .config import StoreConfig
from .errors import (
    ActionError, ConfigurationError, ErrorHandler, MiddlewareError, ReducerError, StoreError,
    global_error_handler,
)
from .history import StateHistory
from .types import NextDispatch, Reducer, S, StateSelector


class Store(Generic[S]):
    """
    狀態容器，管理應用狀態並通知訂閱者狀態變更。

    狀態只能透過 dispatch → 中介軟體鏈 → reducer 的路徑改變；
    啟用歷史時可以 undo / redo。所有對狀態、action 日誌與歷史的
    讀改寫都在同一把可重入鎖之下完成。
    """

    def __init__(
        self,
        initial_state: S,
        reducer: Reducer[S],
        middleware: Optional[Iterable[Any]] = None,
        *,
        enable_history: bool = False,
        max_history_size: int = 50,
        max_action_history: int = 100,
        error_handler: Optional[ErrorHandler] = None,
    ):
        """
        初始化 Store。

        Args:
            initial_state: 初始狀態
            reducer: 純函數 reducer，``(state, action) -> state``
            middleware: 中介軟體列表，可以是類、實例或 ``(store, action, next)`` 函數；
                列在最前面的中介軟體包裹所有其他中介軟體
            enable_history: 是否啟用 undo/redo
            max_history_size: 歷史最多保留的狀態數
            max_action_history: action 日誌最多保留的筆數
            error_handler: 訂閱者回調或中介軟體清理失敗時使用的錯誤處理器，預設為全域錯誤處理器
        """
        self._config = StoreConfig.build(
            enable_history=enable_history,
            max_history_size=max_history_size,
            max_action_history=max_action_history,
        )
        self._lock = threading.RLock()
        self._state = initial_state
        self._reducer = reducer
        self._middleware = []
        self._action_log: Deque[Action[Any]] = deque(maxlen=self._config.max_action_history)
        self._history: Optional[StateHistory[S]] = None
        if self._config.enable_history:
            self._history = StateHistory(self._config.max_history_size)
            # 初始狀態作為歷史的起點
            self._history.push(initial_state)
        # 帶初始值的廣播通道，晚到的訂閱者也會先收到目前狀態
        self._state_subject: BehaviorSubject = BehaviorSubject(initial_state)
        self._disposed = False
        self._error_handler = error_handler or global_error_handler
        # 待送出的通知，由最外層的廣播依序送出
        self._notifications: Deque[Callable[[], None]] = deque()
        self._notifying = False

        for m in middleware or ():
            self._middleware.append(self._instantiate(m))
        self._dispatch_chain = self._apply_middleware_chain()

    # ———— 中介軟體鏈 ————

    @staticmethod
    def _instantiate(m: Any) -> Any:
        # 接受類和實例，如果是類則直接實例化
        inst = m() if inspect.isclass(m) else m
        if not callable(inst):
            raise MiddlewareError(
                "Middleware must be callable as (store, action, next_dispatch)",
                middleware_name=type(inst).__name__,
            )
        return inst

    def _apply_middleware_chain(self) -> NextDispatch:
        """
        構建中介軟體鏈，由最後一個中介軟體開始向外包裹 reducer 階段。

        Returns:
            中介軟體鏈的入口
        """
        dispatch = self._apply_reducer
        for mw in reversed(self._middleware):
            dispatch = self._wrap_middleware(mw, dispatch)
        return dispatch

    def _wrap_middleware(self, mw: Any, next_dispatch: NextDispatch) -> NextDispatch:
        def dispatch(action: Action[Any]) -> None:
            mw(self, action, next_dispatch)
        return dispatch

    def apply_middleware(self, *middlewares: Any) -> None:
        """
        一次註冊多個中介軟體，附加在現有中介軟體之後，並重建 dispatch 鏈。

        Args:
            *middlewares: 要註冊的中介軟體，可以是類、實例或函數。
        """
        instances = [self._instantiate(m) for m in middlewares]
        with self._lock:
            if self._disposed:
                raise StoreError("Cannot apply middleware to a disposed store", operation="apply_middleware")
            self._middleware.extend(instances)
            self._dispatch_chain = self._apply_middleware_chain()

    # ———— 分發 ————

    def dispatch(self, action: Action[Any]) -> None:
        """
        分發一個動作：記錄到 action 日誌，然後從最外層中介軟體開始執行鏈。

        Store 釋放後呼叫此方法不會有任何效果。

        Args:
            action: 要分發的 Action 物件。
        """
        if not isinstance(action, Action):
            raise ActionError(
                f"Only Action instances can be dispatched, got {type(action).__name__}",
                action_type=type(action).__name__,
                payload=action,
            )
        with self._lock:
            if self._disposed:
                return
            self._action_log.append(action)
            chain = self._dispatch_chain
            chain(action)

    def _apply_reducer(self, action: Action[Any]) -> None:
        """鏈的終點：套用 reducer，狀態有變化時才替換、記錄歷史並廣播。"""
        with self._lock:
            if self._disposed:
                return
            old_state = self._state
            try:
                new_state = self._reducer(old_state, action)
            except Exception as err:
                raise ReducerError(
                    f"Reducer failed while handling {action.type!r}: {err}",
                    reducer_name=getattr(self._reducer, "__name__", repr(self._reducer)),
                    action_type=action.type,
                    state=old_state,
                ) from err

            if new_state is old_state or new_state == old_state:
                return

            self._state = new_state
            if self._history is not None:
                self._history.push(new_state)
            self._broadcast(new_state)

    # ———— 通知 ————

    def _broadcast(self, state: S) -> None:
        self._notify(functools.partial(self._state_subject.on_next, state))

    def _notify(self, notification: Callable[[], None]) -> None:
        """
        將通知排入佇列並依先進先出的順序送出。

        訂閱者在回調中再次 dispatch 時，內層產生的通知只會排隊，
        由最外層的呼叫在目前這筆送完之後才送出，所有訂閱者看到相同的順序。
        """
        with self._lock:
            self._notifications.append(notification)
            if self._notifying:
                return
            self._notifying = True
            try:
                while self._notifications:
                    pending = self._notifications.popleft()
                    try:
                        pending()
                    except Exception as err:
                        self._error_handler.handle(err)
            finally:
                self._notifying = False

    # ———— 歷史 ————

    def _require_history(self, operation: str) -> StateHistory[S]:
        if self._history is None:
            raise ConfigurationError(
                f"Cannot {operation}: history is not enabled",
                component="Store",
                config_key="enable_history",
            )
        return self._history

    def undo(self) -> bool:
        """
        將狀態回退一步。不會重新執行 reducer，也不會改變 action 日誌。

        Returns:
            是否真的回退了（已在最舊狀態時返回 False）

        Raises:
            ConfigurationError: 未啟用歷史時
        """
        history = self._require_history("undo")
        with self._lock:
            if self._disposed or not history.can_undo:
                return False
            self._state = history.undo()
            self._broadcast(self._state)
            return True

    def redo(self) -> bool:
        """
        將狀態前進一步。

        Returns:
            是否真的前進了（已在最新狀態時返回 False）

        Raises:
            ConfigurationError: 未啟用歷史時
        """
        history = self._require_history("redo")
        with self._lock:
            if self._disposed or not history.can_redo:
                return False
            self._state = history.redo()
            self._broadcast(self._state)
            return True

    @property
    def can_undo(self) -> bool:
        return self._history is not None and self._history.can_undo

    @property
    def can_redo(self) -> bool:
        return self._history is not None and self._history.can_redo

    @property
    def history_size(self) -> int:
        """目前保存的歷史狀態數；未啟用歷史時為 0。"""
        return 0 if self._history is None else self._history.size

    @property
    def history_index(self) -> int:
        return -1 if self._history is None else self._history.current_index

    # ———— 觀察 ————

    @property
    def state(self) -> S:
        """
        獲取當前狀態的快照。

        Returns:
            當前狀態。
        """
        return self._state

    @property
    def stream(self) -> Observable:
        """狀態流：訂閱時先發送目前狀態，之後每次狀態變更都會發送。"""
        return self._state_subject.pipe(ops.as_observable())

    def subscribe(
        self,
        on_next: Optional[Callable[[S], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_completed: Optional[Callable[[], None]] = None,
    ) -> DisposableBase:
        """
        訂閱狀態變更。

        Args:
            on_next: 接收狀態的回調，訂閱時會立即收到目前狀態
            on_error: 錯誤回調
            on_completed: Store 釋放時的回調

        on_next 拋出的異常交給錯誤處理器，不會中斷其他訂閱者，也不會拋回 dispatch 呼叫端。

        Returns:
            可呼叫 ``dispose()`` 取消的訂閱
        """
        deliver = None
        if on_next is not None:
            def deliver(state: S) -> None:
                try:
                    on_next(state)
                except Exception as err:
                    self._error_handler.handle(err)

        return self._state_subject.subscribe(on_next=deliver, on_error=on_error, on_completed=on_completed)

    def select(self, selector: StateSelector[S, Any]) -> Observable:
        """
        選擇狀態的一部分進行觀察。

        Args:
            selector: 一個函數，接收整個狀態並返回希望觀察的部分。

        Returns:
            一個可觀察對象，只有選定部分變化時才發出。
        """
        return self._state_subject.pipe(
            ops.map(selector),
            ops.distinct_until_changed(),
        )

    @property
    def action_history(self) -> Tuple[Action[Any], ...]:
        """最近分發的 actions（唯讀快照），由舊到新。"""
        with self._lock:
            return tuple(self._action_log)

    def clear_action_history(self) -> None:
        with self._lock:
            self._action_log.clear()

    @property
    def config(self) -> StoreConfig:
        return self._config

    # ———— 生命週期 ————

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """
        釋放 Store：清理所有中介軟體的資源（計時器、任務），並結束狀態流。

        可重複呼叫；釋放後 dispatch / undo / redo 都不會再產生效果。
        個別中介軟體清理失敗時交給錯誤處理器，其餘中介軟體仍會被清理。
        """
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            middleware = list(self._middleware)

        try:
            for mw in middleware:
                teardown = getattr(mw, "teardown", None)
                if not callable(teardown):
                    continue
                try:
                    teardown()
                except Exception as err:
                    failure = MiddlewareError(
                        f"Teardown failed: {err}",
                        middleware_name=type(mw).__name__,
                    )
                    failure.__cause__ = err
                    self._error_handler.handle(failure)
        finally:
            self._notify(self._state_subject.on_completed)

    def __enter__(self) -> "Store[S]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"Store(state={self._state!r}, middleware={len(self._middleware)}, history={self.history_size})"


def create_store(
    reducer: Reducer[S],
    initial_state: Optional[S] = None,
    middleware: Optional[Iterable[Any]] = None,
    **options: Any,
) -> Store[S]:
    """
    創建一個新的 Store 實例。

    未提供 initial_state 時，先取 ``reducer.initial_state``，
    否則以 ``reducer(None, init_store())`` 推導。

    Args:
        reducer: reducer 函數
        initial_state: 初始狀態（可選）
        middleware: 中介軟體列表（可選）
        **options: 傳給 Store 的其他選項，例如 enable_history

    Returns:
        Store: 新創建的 Store 實例。
    """
    if initial_state is None:
        initial_state = getattr(reducer, "initial_state", None)
    if initial_state is None:
        initial_state = reducer(None, init_store())
    return Store(initial_state, reducer, middleware, **options)
