"""
PyStateX 錯誤處理模組。

提供結構化的異常層級，以及一個集中式的錯誤處理器，
讓非同步工作、計時器執行緒等無法把錯誤拋回呼叫端的地方有統一的回報出口。
"""
import logging
import traceback
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger("pystatex")


class PyStateXError(Exception):
    """所有 PyStateX 異常的基礎類。"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.traceback = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        """
        轉換為可序列化的字典。

        Returns:
            包含錯誤類型、訊息、細節與堆疊的字典
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": dict(self.details),
            "traceback": self.traceback,
        }

    def __str__(self) -> str:
        if not self.details:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        return f"{self.message} ({details})"


class ActionError(PyStateXError):
    """與 Action 相關的錯誤，例如分發了不是 Action 的物件。"""

    def __init__(self, message: str, action_type: str, payload: Any = None, **kwargs: Any) -> None:
        super().__init__(message, {"action_type": action_type, "payload": payload, **kwargs})


class ReducerError(PyStateXError):
    """套用 reducer 時拋出的錯誤，原始異常保存在 ``__cause__``。"""

    def __init__(self, message: str, reducer_name: str, action_type: str, state: Any = None, **kwargs: Any) -> None:
        super().__init__(
            message,
            {"reducer_name": reducer_name, "action_type": action_type, "state": state, **kwargs},
        )


class MiddlewareError(PyStateXError):
    """與 Middleware 相關的錯誤。"""

    def __init__(self, message: str, middleware_name: str, action_type: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(
            message,
            {"middleware_name": middleware_name, "action_type": action_type, **kwargs},
        )


class StoreError(PyStateXError):
    """與 Store 相關的錯誤。"""

    def __init__(self, message: str, operation: str, **kwargs: Any) -> None:
        super().__init__(message, {"operation": operation, **kwargs})


class ConfigurationError(PyStateXError):
    """配置相關的錯誤，例如在未啟用歷史的 Store 上呼叫 undo。"""

    def __init__(self, message: str, component: str, config_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(
            message,
            {"component": component, "config_key": config_key, **kwargs},
        )


class StoreLookupError(PyStateXError):
    """在某個上下文中找不到已註冊的 Store。供 UI 綁定層使用。"""

    def __init__(self, message: str, context: Any = None, **kwargs: Any) -> None:
        super().__init__(message, {"context": context, **kwargs})


ErrorCallback = Callable[[PyStateXError, Any], None]


class ErrorHandler:
    """
    集中式錯誤處理器，用於捕獲、日誌記錄和錯誤報告。

    處理器不會重新拋出錯誤；已註冊的回調若自身失敗，也只會被記錄下來。
    """

    def __init__(self, log_to_console: bool = True, log_to_file: bool = False, log_file: Optional[str] = None) -> None:
        """
        初始化錯誤處理器。

        Args:
            log_to_console: 是否透過 ``pystatex`` logger 輸出錯誤
            log_to_file: 是否額外寫入檔案
            log_file: 日誌檔路徑，``log_to_file`` 為 True 時使用
        """
        self.log_to_console = log_to_console
        self.log_to_file = log_to_file
        self.log_file = log_file or "pystatex_errors.log"
        self.handlers: List[ErrorCallback] = []
        self._file_handler: Optional[logging.Handler] = None

    def register_handler(self, handler: ErrorCallback) -> None:
        """註冊一個錯誤回調，接收 ``(error, action)``。"""
        self.handlers.append(handler)

    def unregister_handler(self, handler: ErrorCallback) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    def handle(self, error: Union[PyStateXError, BaseException], action: Any = None) -> PyStateXError:
        """
        處理一個錯誤。

        非 PyStateXError 的異常會先被包裝，原始異常保存在 ``__cause__``。

        Args:
            error: 要處理的錯誤
            action: 觸發錯誤的 Action（可選）

        Returns:
            包裝後的 PyStateXError
        """
        if isinstance(error, PyStateXError):
            wrapped = error
        else:
            wrapped = PyStateXError(
                str(error) or error.__class__.__name__,
                {"original_type": error.__class__.__name__},
            )
            wrapped.__cause__ = error
            wrapped.traceback = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        action_type = getattr(action, "type", None)
        if self.log_to_console:
            logger.error("❌ %s (action=%s)", wrapped, action_type)
        if self.log_to_file:
            self._log_to_file(wrapped, action_type)

        for handler in list(self.handlers):
            try:
                handler(wrapped, action)
            except Exception:
                logger.exception("Error handler %r failed", handler)
        return wrapped

    def _log_to_file(self, error: PyStateXError, action_type: Any) -> None:
        if self._file_handler is None:
            self._file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
            self._file_handler.setLevel(logging.ERROR)
        record = logger.makeRecord(
            logger.name, logging.ERROR, __file__, 0,
            "%s (action=%s)\n%s", (error, action_type, error.traceback), None,
        )
        self._file_handler.handle(record)


# 單例錯誤處理器
global_error_handler = ErrorHandler()
