"""Store 配置模型。"""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError


class StoreConfig(BaseModel):
    """
    Store 的建構選項。

    Attributes:
        enable_history: 是否啟用 undo/redo 歷史
        max_history_size: 歷史最多保留的狀態數
        max_action_history: action 日誌最多保留的筆數，超出時淘汰最舊的
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_history: bool = False
    max_history_size: int = Field(default=50, ge=1)
    max_action_history: int = Field(default=100, ge=1)

    @classmethod
    def build(cls, **options: Any) -> "StoreConfig":
        """驗證並建立配置，驗證失敗時轉換為 ConfigurationError。"""
        try:
            return cls(**options)
        except PydanticValidationError as err:
            first = err.errors()[0]
            key = ".".join(str(loc) for loc in first.get("loc", ())) or None
            raise ConfigurationError(
                f"Invalid store configuration: {first.get('msg')}",
                component="Store",
                config_key=key,
            ) from err
