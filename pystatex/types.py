"""
PyStateX 共用類型定義模組。

集中定義 Store、Middleware、Reducer 之間傳遞的函數簽名與協定，
讓其他模組只依賴這裡的名稱，而不互相依賴實作。
"""
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from typing_extensions import Protocol, TypedDict

if TYPE_CHECKING:
    from .actions import Action
    from .store import Store

S = TypeVar("S")  # 狀態類型
P = TypeVar("P")  # 負載類型
T = TypeVar("T")

NextDispatch = Callable[["Action[Any]"], None]
Reducer = Callable[[S, "Action[Any]"], S]
ActionHandler = Callable[[S, "Action[Any]"], S]
StateSelector = Callable[[S], T]
Sink = Callable[[str], None]


class Middleware(Protocol):
    """
    中介軟體協定。

    中介軟體接收 store、目前的 action 與下一層的 dispatch，
    只有呼叫 ``next_dispatch(action)`` 才會讓流程往內層推進。
    """

    def __call__(self, store: "Store[Any]", action: "Action[Any]", next_dispatch: NextDispatch) -> None:
        ...


class ActionContext(TypedDict, total=False):
    """單次分發過程中，中介軟體鉤子之間共享的上下文。"""
    action: Any
    prev_state: Any
    next_state: Any
    error: Optional[BaseException]
    timestamp: Any
    elapsed_ms: float
