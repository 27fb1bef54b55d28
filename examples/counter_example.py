"""
PyStateX 範例：計數器應用，展示 undo/redo、非同步資料載入與中介軟體的使用
"""

from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
import asyncio
import enum
import random
from typing import Optional, Tuple

from immutables import Map
from pydantic import BaseModel

from pystatex import (
    Action,
    AsyncMiddleware,
    BatchMiddleware,
    ConditionalMiddleware,
    ErrorMiddleware,
    PerformanceMonitorMiddleware,
    TimestampedLoggerMiddleware,
    async_action,
    batch,
    create_action,
    create_reducer,
    create_store,
    on,
    to_dict,
)


# ====== 1. 定義狀態模型 ======
class AppStateModel(BaseModel):
    counter: int
    is_loading: bool
    error_message: Optional[str]
    messages: Tuple[str, ...]


initial_state = Map(counter=0, is_loading=False, error_message=None, messages=())


# ====== 2. 定義 Actions ======
class CounterAction(str, enum.Enum):
    INCREMENT = "[Counter] Increment"
    DECREMENT = "[Counter] Decrement"
    RESET = "[Counter] Reset"
    FETCH_START = "[Data] Fetch Start"
    FETCH_SUCCESS = "[Data] Fetch Success"
    FETCH_ERROR = "[Data] Fetch Error"
    ADD_MESSAGE = "[Message] Add"


increment = create_action(CounterAction.INCREMENT, lambda amount=1: amount)
decrement = create_action(CounterAction.DECREMENT, lambda amount=1: amount)
reset = create_action(CounterAction.RESET)
fetch_start = create_action(CounterAction.FETCH_START)
fetch_success = create_action(CounterAction.FETCH_SUCCESS, lambda data: data)
fetch_error = create_action(CounterAction.FETCH_ERROR, lambda error: error)
add_message = create_action(CounterAction.ADD_MESSAGE, lambda message: message)


# ====== 3. 定義 Reducer ======
def _with_message(state: Map, message: str) -> Map:
    return state.set("messages", state["messages"] + (message,))


def handle_fetch_success(state: Map, action: Action[str]) -> Map:
    return _with_message(state.set("is_loading", False).set("error_message", None), action.payload)


app_reducer = create_reducer(
    initial_state,
    on(increment, lambda state, action: state.set("counter", state["counter"] + action.payload)),
    on(decrement, lambda state, action: state.set("counter", state["counter"] - action.payload)),
    on(reset, lambda state, action: state.set("counter", 0)),
    on(fetch_start, lambda state, action: state.set("is_loading", True).set("error_message", None)),
    on(fetch_success, handle_fetch_success),
    on(fetch_error, lambda state, action: state.set("is_loading", False).set("error_message", action.payload)),
    on(add_message, lambda state, action: _with_message(state, action.payload)),
    kinds=CounterAction,
)


# ====== 4. 定義非同步動作 ======
@async_action
async def fetch_data(store, fail_rate: float = 0.3):
    store.dispatch(fetch_start())
    await asyncio.sleep(0.5)
    if random.random() < fail_rate:
        store.dispatch(fetch_error("資料載入失敗"))
        return
    store.dispatch(fetch_success(f"資料載入成功 (counter={store.state['counter']})"))


# ====== 5. 建立 Store ======
store = create_store(
    app_reducer,
    middleware=[
        ErrorMiddleware(),
        PerformanceMonitorMiddleware(threshold_ms=16),
        BatchMiddleware(),
        AsyncMiddleware(on_failure=lambda err, action: print(f"[Async] {action!r} 失敗: {err}")),
        # 載入中不接受重複的載入請求
        ConditionalMiddleware(
            lambda state, action: not (state["is_loading"] and action.type == CounterAction.FETCH_START)
        ),
        TimestampedLoggerMiddleware(log_state=False),
    ],
    enable_history=True,
    max_history_size=20,
)

# ====== 6. 訂閱狀態 ======
store.select(lambda s: s["counter"]).subscribe(lambda c: print(f"計數器: {c}"))
store.select(lambda s: s["error_message"]).subscribe(
    lambda e: e and print(f"[錯誤] {e}")
)


async def main():
    store.dispatch(fetch_data(fail_rate=0.0))
    await asyncio.sleep(1)


# ====== 7. 執行操作示例 ======
if __name__ == "__main__":
    print("開始執行計數器範例...")
    store.dispatch(increment(1))
    store.dispatch(increment(10))
    store.dispatch(decrement(5))
    print(f"目前計數: {store.state['counter']}")

    print("\n==== Undo / Redo ====")
    store.undo()
    store.undo()
    print(f"兩次 undo 後: {store.state['counter']}")
    store.redo()
    print(f"一次 redo 後: {store.state['counter']}")

    print("\n==== 批次分發 ====")
    store.dispatch(batch(add_message("hello"), add_message("world"), reset()))

    print("\n==== 非同步載入 ====")
    asyncio.run(main())

    print("\n==== 最終狀態 ====")
    print(f"狀態字典: {to_dict(store.state)}")
    print(f"Pydantic: {AppStateModel(**to_dict(store.state))}")
    print(f"Action 日誌筆數: {len(store.action_history)}")
    print(f"歷史: {store.history_index + 1}/{store.history_size}")
    store.dispose()
