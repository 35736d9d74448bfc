"""序列化工具。

Task 负载与结果流条目统一使用 orjson 编解码。
"""

from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any

import orjson


def to_jsonable(obj: Any) -> Any:
    """将 dataclass / 枚举 / 容器递归转换为可 JSON 序列化的结构。"""
    if isinstance(obj, Enum):
        return obj.value
    if is_dataclass(obj) and not isinstance(obj, type):
        data = {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
        data["kind"] = type(obj).__name__
        return data
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    return str(obj)


def dumps(obj: Any) -> bytes:
    return orjson.dumps(to_jsonable(obj))


def dumps_str(data: dict[str, Any]) -> str:
    return orjson.dumps(data).decode("utf-8")


def loads(raw: str | bytes) -> Any:
    return orjson.loads(raw)
