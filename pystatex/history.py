"""
狀態歷史模組。

StateHistory 以單一游標管理有上限的狀態序列，提供 undo / redo：
- 游標不在尾端時 push，會捨棄游標之後的所有狀態（新分支覆蓋 redo 的未來）
- 超過上限時淘汰最舊的狀態，並同步遞減游標，使其仍指向同一個邏輯狀態
"""
from collections import deque
from typing import Deque, Generic, Optional, Tuple

from .errors import ConfigurationError
from .types import S


class StateHistory(Generic[S]):
    """
    有上限、會捨棄分支的 undo/redo 狀態堆疊。

    Attributes:
        max_size: 最多保留的狀態數量
    """

    def __init__(self, max_size: int = 50):
        if max_size < 1:
            raise ConfigurationError(
                "History size must be at least 1",
                component="StateHistory",
                config_key="max_size",
                value=max_size,
            )
        self.max_size = max_size
        self._history: Deque[S] = deque()
        self._current_index = -1

    def push(self, state: S) -> None:
        """
        將狀態加入歷史。

        Args:
            state: 要記錄的新狀態
        """
        # 捨棄游標之後的狀態（新的分支）
        while len(self._history) - 1 > self._current_index:
            self._history.pop()

        self._history.append(state)
        self._current_index += 1

        if len(self._history) > self.max_size:
            self._history.popleft()
            self._current_index -= 1

    def undo(self) -> Optional[S]:
        """回到上一個狀態；已在最舊的狀態時返回 None。"""
        if not self.can_undo:
            return None
        self._current_index -= 1
        return self._history[self._current_index]

    def redo(self) -> Optional[S]:
        """前進到下一個狀態；已在最新的狀態時返回 None。"""
        if not self.can_redo:
            return None
        self._current_index += 1
        return self._history[self._current_index]

    def clear(self) -> None:
        self._history.clear()
        self._current_index = -1

    @property
    def can_undo(self) -> bool:
        return self._current_index > 0

    @property
    def can_redo(self) -> bool:
        return self._current_index < len(self._history) - 1

    @property
    def current(self) -> Optional[S]:
        if self._current_index < 0:
            return None
        return self._history[self._current_index]

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def size(self) -> int:
        return len(self._history)

    def states(self) -> Tuple[S, ...]:
        """返回目前保存的所有狀態快照，由舊到新。"""
        return tuple(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def __repr__(self) -> str:
        return f"StateHistory(size={len(self._history)}, index={self._current_index}, max_size={self.max_size})"
