# pystatex/immutable_utils.py
from typing import Any

from immutables import Map
from pydantic import BaseModel


def to_immutable(obj: Any) -> Any:
    """將任何對象深度轉換為不可變形式 (包括 Pydantic 模型)"""
    if isinstance(obj, Map):
        return Map({k: to_immutable(v) for k, v in obj.items()})
    if isinstance(obj, BaseModel):
        # Pydantic 模型轉為 Map
        return Map({k: to_immutable(v) for k, v in obj.model_dump().items()})
    if isinstance(obj, dict):
        return Map({k: to_immutable(v) for k, v in obj.items()})
    if isinstance(obj, (list, tuple)):
        # 列表轉為元組
        return tuple(to_immutable(i) for i in obj)
    if isinstance(obj, (set, frozenset)):
        return frozenset(to_immutable(i) for i in obj)
    return obj


def to_dict(obj: Any) -> Any:
    """將 Map 及其巢狀結構轉換回普通 Python 容器，供日誌輸出使用"""
    if isinstance(obj, Map):
        return {k: to_dict(v) for k, v in obj.items()}
    if isinstance(obj, BaseModel):
        return obj.model_dump()
    if isinstance(obj, tuple):
        return [to_dict(i) for i in obj]
    if isinstance(obj, frozenset):
        return {to_dict(i) for i in obj}
    return obj
