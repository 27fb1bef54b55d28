"""
PyStateX：單一寫入者、可觀察的狀態容器。

狀態只能透過 Action → Middleware 鏈 → Reducer 的路徑改變，
並可選擇啟用有上限的 undo/redo 歷史。
"""

from .errors import (
    PyStateXError, ActionError, ReducerError, MiddlewareError, StoreError,
    ConfigurationError, StoreLookupError, ErrorHandler, global_error_handler,
)
from .actions import (
    Action, AsyncAction, BatchAction, create_action, async_action, batch, init_store,
)
from .reducers import create_reducer, on, combine_reducers
from .history import StateHistory
from .config import StoreConfig
from .middleware import (
    BaseMiddleware, AsyncMiddleware, LoggerMiddleware, TimestampedLoggerMiddleware,
    PerformanceMonitorMiddleware, ErrorMiddleware, ThrottleMiddleware,
    DebounceMiddleware, FilterMiddleware, TransformMiddleware, DROP,
    BatchMiddleware, ConditionalMiddleware, DebugOnlyMiddleware,
)
from .store import Store, create_store
from .immutable_utils import to_immutable, to_dict

__version__ = "0.1.0"

__all__ = [
    # errors
    "PyStateXError", "ActionError", "ReducerError", "MiddlewareError", "StoreError",
    "ConfigurationError", "StoreLookupError", "ErrorHandler", "global_error_handler",
    # actions
    "Action", "AsyncAction", "BatchAction", "create_action", "async_action", "batch", "init_store",
    # reducers
    "create_reducer", "on", "combine_reducers",
    # history / config
    "StateHistory", "StoreConfig",
    # middleware
    "BaseMiddleware", "AsyncMiddleware", "LoggerMiddleware", "TimestampedLoggerMiddleware",
    "PerformanceMonitorMiddleware", "ErrorMiddleware", "ThrottleMiddleware",
    "DebounceMiddleware", "FilterMiddleware", "TransformMiddleware", "DROP",
    "BatchMiddleware", "ConditionalMiddleware", "DebugOnlyMiddleware",
    # store
    "Store", "create_store",
    # utils
    "to_immutable", "to_dict",
]
