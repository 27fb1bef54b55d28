"""
基於 PyStateX 的 Action 定義模組。

此模組提供 Action 類別以及創建 Action 的功能。
Actions 是描述狀態變更意圖的不可變對象，建立時會記錄時間戳。
"""
import time
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, Tuple, Union

from .errors import ActionError
from .immutable_utils import to_immutable
from .types import P

ASYNC_ACTION = "[Async] Execute"
BATCH_ACTION = "[Batch] Dispatch"


class Action(Generic[P]):
    """
    表示一個有類型和可選負載的動作。

    泛型參數:
        P: 負載的類型

    屬性:
        type: 動作的類型（字串或 Enum 成員），作為分派的判別值
        payload: 動作的負載數據（可選）
        timestamp: 建立時間（``time.time()``），建立後不可變
    """
    __slots__ = ('type', 'payload', 'timestamp')

    def __init__(self, type: Any, payload: Optional[P] = None, timestamp: Optional[float] = None):
        super().__setattr__('type', type)
        super().__setattr__('payload', payload)
        super().__setattr__('timestamp', time.time() if timestamp is None else timestamp)

    def __setattr__(self, name, value):
        raise AttributeError(f"Cannot modify immutable instance attribute '{name}'")

    def __delattr__(self, name):
        raise AttributeError(f"Cannot delete immutable instance attribute '{name}'")

    def __eq__(self, other):
        if not isinstance(other, Action):
            return False
        return self.type == other.type and self.payload == other.payload

    def __hash__(self):
        return hash((self.type, self.payload))

    def __repr__(self):
        return f"Action(type={self.type!r}, payload={self.payload!r})"


def _process_payload(payload: Any) -> Any:
    """將 dict / list 等可變負載轉換為不可變結構。"""
    return to_immutable(payload)


def create_action(action_type: Any, prepare_fn: Optional[Callable[..., Any]] = None) -> Callable[..., Action[Any]]:
    """
    創建一個 Action 生成器函數。

    Args:
        action_type: Action 的類型標識符
        prepare_fn: 可選的預處理函數，用於在創建 Action 前處理輸入參數

    Returns:
        一個可調用的函數，每次調用都產生帶有新時間戳的 Action

    範例:
        >>> increment = create_action("[Counter] Increment")
        >>> increment()  # Action(type='[Counter] Increment', payload=None)
        >>>
        >>> add = create_action("[Counter] Add", lambda amount: amount)
        >>> add(5)  # Action(type='[Counter] Add', payload=5)
    """
    def action_creator(*args: Any, **kwargs: Any) -> Action[Any]:
        if prepare_fn:
            return Action(action_type, _process_payload(prepare_fn(*args, **kwargs)))
        if len(args) == 1 and not kwargs:
            return Action(action_type, _process_payload(args[0]))
        if args or kwargs:
            payload = dict(zip(range(len(args)), args))
            payload.update(kwargs)
            return Action(action_type, _process_payload(payload))
        # 無參數，無負載
        return Action(action_type)

    # 添加 type 屬性以便於識別
    action_creator.type = action_type  # type: ignore[attr-defined]
    return action_creator


AsyncWork = Callable[[Any], Union[Awaitable[Any], Any]]


class AsyncAction(Action[AsyncWork]):
    """
    延遲執行的非同步動作。

    ``execute(store)`` 可以是協程函數，也可以是一般函數；
    它在執行過程中可以任意次數地呼叫 ``store.dispatch``。
    必須搭配 AsyncMiddleware 才會被執行，否則 reducer 會將其視為 no-op。
    """
    __slots__ = ()
    KIND = ASYNC_ACTION

    def __init__(self, execute: AsyncWork):
        if not callable(execute):
            raise ActionError("AsyncAction requires a callable", action_type=self.KIND, payload=execute)
        super().__init__(self.KIND, execute)

    @property
    def execute(self) -> AsyncWork:
        return self.payload

    @property
    def name(self) -> str:
        return getattr(self.payload, "__name__", repr(self.payload))

    def __repr__(self):
        return f"AsyncAction({self.name})"


class BatchAction(Action[Tuple[Action[Any], ...]]):
    """攜帶多個子動作的批次動作，由 BatchMiddleware 逐一重新分發。"""
    __slots__ = ()
    KIND = BATCH_ACTION

    def __init__(self, actions: Iterable[Action[Any]]):
        actions = tuple(actions)
        for item in actions:
            if not isinstance(item, Action):
                raise ActionError("BatchAction items must be actions", action_type=self.KIND, payload=item)
        super().__init__(self.KIND, actions)

    @property
    def actions(self) -> Tuple[Action[Any], ...]:
        return self.payload

    def __repr__(self):
        return f"BatchAction({len(self.payload)} actions)"


def async_action(fn: AsyncWork) -> Callable[..., AsyncAction]:
    """
    裝飾器：把接收 ``(store, *args)`` 的函數轉為 AsyncAction 工廠。

    範例:
        >>> @async_action
        ... async def fetch_data(store, url):
        ...     store.dispatch(fetch_start())
        >>> store.dispatch(fetch_data("https://example.com"))
    """
    def factory(*args: Any, **kwargs: Any) -> AsyncAction:
        def execute(store):
            return fn(store, *args, **kwargs)
        execute.__name__ = getattr(fn, "__name__", "async_action")
        return AsyncAction(execute)

    factory.type = ASYNC_ACTION  # type: ignore[attr-defined]
    factory.__name__ = getattr(fn, "__name__", "async_action")
    factory.__doc__ = fn.__doc__
    return factory


def batch(*actions: Action[Any]) -> BatchAction:
    """將多個 Action 打包成一個 BatchAction。"""
    return BatchAction(actions)


# 根 Actions
init_store = create_action("[Root] Init Store")
