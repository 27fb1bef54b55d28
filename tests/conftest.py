"""
共用的 pytest fixtures：計數器 reducer、actions 與記錄用的中介軟體。
"""
import enum

import pytest
from immutables import Map

from pystatex import Store, create_action, create_reducer, on


class CounterKind(str, enum.Enum):
    INCREMENT = "[Counter] Increment"
    DECREMENT = "[Counter] Decrement"
    RESET = "[Counter] Reset"
    EXPLODE = "[Counter] Explode"


increment = create_action(CounterKind.INCREMENT, lambda amount=1: amount)
decrement = create_action(CounterKind.DECREMENT, lambda amount=1: amount)
reset = create_action(CounterKind.RESET)
explode = create_action(CounterKind.EXPLODE)


def _explode(state, action):
    raise ValueError("boom")


counter_reducer = create_reducer(
    Map(counter=0),
    on(increment, lambda state, action: state.set("counter", state["counter"] + action.payload)),
    on(decrement, lambda state, action: state.set("counter", state["counter"] - action.payload)),
    on(reset, lambda state, action: state.set("counter", 0)),
    on(explode, _explode),
    kinds=CounterKind,
)


class Recorder:
    """把經過的 action 記錄下來，然後原樣放行。"""

    def __init__(self):
        self.actions = []

    def __call__(self, store, action, next_dispatch):
        self.actions.append(action)
        next_dispatch(action)

    @property
    def kinds(self):
        return [action.type for action in self.actions]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def store():
    s = Store(Map(counter=0), counter_reducer)
    yield s
    s.dispose()


@pytest.fixture
def history_store():
    s = Store(Map(counter=0), counter_reducer, enable_history=True)
    yield s
    s.dispose()


@pytest.fixture
def make_store():
    """建立帶有指定中介軟體的 Store，測試結束時自動釋放。"""
    created = []

    def factory(*middleware, **options):
        s = Store(Map(counter=0), counter_reducer, list(middleware), **options)
        created.append(s)
        return s

    yield factory
    for s in created:
        s.dispose()
