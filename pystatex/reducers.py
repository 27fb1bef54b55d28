import enum
import inspect
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from immutables import Map

from .actions import Action
from .errors import ConfigurationError
from .types import ActionHandler, Reducer, S


def _kind_of(action_creator_or_type: Any) -> Any:
    """從 Action 創建器、Action 子類、Enum 成員或字串取得分派用的 kind。"""
    if inspect.isclass(action_creator_or_type) and issubclass(action_creator_or_type, Action):
        kind = getattr(action_creator_or_type, "KIND", None)
        if kind is None:
            raise ConfigurationError(
                f"{action_creator_or_type.__name__} does not declare a KIND",
                component="reducer",
            )
        return kind
    if callable(action_creator_or_type) and hasattr(action_creator_or_type, "type"):
        # 如果是 action 創建器函式，則提取其類型
        return action_creator_or_type.type
    if isinstance(action_creator_or_type, enum.Enum):
        return action_creator_or_type
    # 否則直接將其轉為字串作為類型
    return str(action_creator_or_type)


def create_reducer(
    initial_state: S,
    *handlers: Union[Tuple[Any, ActionHandler], Dict[Any, ActionHandler]],
    kinds: Optional[Iterable[Any]] = None,
) -> Reducer[S]:
    """
    創建一個 reducer 函式，用於處理狀態變更。

    Args:
        initial_state: 初始狀態。
        *handlers: 一系列 (action_type, handler_fn) 元組或使用 on 函式創建的處理器。
        kinds: 可選的 kind 全集（Enum 類別或可迭代物件）。提供時會在建立階段
            檢查每個 kind 都有對應的處理器，缺漏時拋出 ConfigurationError。

    Returns:
        一個 reducer 函式，根據 action 的類型執行對應的處理邏輯；
        未知的類型（包含 AsyncAction、BatchAction）會原樣返回 state。
    """
    action_handlers: Dict[Any, ActionHandler] = {}  # 儲存 action 類型與處理函式的對應關係

    for handler in handlers:
        if isinstance(handler, tuple) and len(handler) == 2:
            action_type, handler_fn = handler
            action_handlers[_kind_of(action_type)] = handler_fn
        elif isinstance(handler, dict):
            action_handlers.update(handler)
        else:
            raise ConfigurationError(
                f"Unsupported handler declaration: {handler!r}",
                component="reducer",
            )

    if kinds is not None:
        missing = [kind for kind in kinds if kind not in action_handlers]
        if missing:
            raise ConfigurationError(
                f"Reducer does not handle kinds: {missing}",
                component="reducer",
                config_key="kinds",
            )

    def reducer(state: S = initial_state, action: Action = None) -> S:
        """
        Reducer 函式，根據 action 處理狀態變更。

        Args:
            state: 當前狀態，默認為初始狀態。
            action: 要處理的 action，默認為 None。

        Returns:
            新的狀態，如果沒有對應的處理器則返回原狀態。
        """
        if action is None:
            return state
        if state is None:
            state = initial_state

        handler = action_handlers.get(action.type)
        if handler:
            return handler(state, action)
        return state

    reducer.initial_state = initial_state  # type: ignore[attr-defined]
    reducer.handlers = action_handlers  # type: ignore[attr-defined]
    return reducer


def on(action_creator_or_type: Any, handler: ActionHandler) -> Dict[Any, ActionHandler]:
    """
    創建一個 action 類型與處理函式的映射。

    Args:
        action_creator_or_type: Action 創建器、帶 KIND 的 Action 子類、Enum 成員或字串。
        handler: 處理該 Action 的函式，接收 (state, action) 並返回新狀態。

    Returns:
        一個包含 {action_type: handler} 的字典。
    """
    return {_kind_of(action_creator_or_type): handler}


def combine_reducers(reducers: Dict[str, Callable[[Any, Action], Any]]) -> Reducer[Map]:
    """
    將多個特性 reducer 組合成一個以 Map 為根狀態的 reducer。

    沒有任何特性切片變化時會返回同一個根物件，讓 Store 能以 identity 判斷 no-op。

    Args:
        reducers: 特性鍵名到 reducer 的映射字典。

    Returns:
        根 reducer，其 ``initial_state`` 由各特性 reducer 的初始狀態組成。
    """
    feature_reducers = dict(reducers)
    initial_state = Map({
        key: getattr(r, "initial_state", None) for key, r in feature_reducers.items()
    })

    def root_reducer(state: Map = initial_state, action: Action = None) -> Map:
        if state is None:
            state = initial_state
        if action is None:
            return state

        mutation = None
        for feature_key, reducer in feature_reducers.items():
            prev_substate = state.get(feature_key, getattr(reducer, "initial_state", None))
            next_substate = reducer(prev_substate, action)
            if next_substate is not prev_substate or feature_key not in state:
                if mutation is None:
                    mutation = state.mutate()
                mutation[feature_key] = next_substate

        if mutation is None:
            return state
        return mutation.finish()

    root_reducer.initial_state = initial_state  # type: ignore[attr-defined]
    root_reducer.reducers = feature_reducers  # type: ignore[attr-defined]
    return root_reducer
