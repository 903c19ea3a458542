from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping


DEFAULT_METHOD = "PUT"


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _get_str(obj: Mapping[str, Any], key: str) -> str:
    v = obj.get(key)
    if v is None:
        return ""
    if not isinstance(v, str):
        raise ValueError(f"field {key!r} must be a string, got {type(v).__name__}")
    return v


def _get_optional_str(obj: Mapping[str, Any], key: str) -> str | None:
    v = _get_str(obj, key)
    return v or None


@dataclass(frozen=True, slots=True)
class Event:
    """
    一条 feed 事件（CloudEvent）。

    除 id 作为 cursor 使用外，其余字段对订阅引擎都是不透明的，原样透传给消费方。
    """

    id: str
    specversion: str = ""
    type: str = ""
    source: str = ""
    time: datetime | None = None
    subject: str = ""
    method: str | None = None
    datacontenttype: str | None = None
    data: Mapping[str, Any] | None = None

    def effective_method(self) -> str:
        return self.method or DEFAULT_METHOD

    @classmethod
    def from_json_dict(cls, obj: Mapping[str, Any]) -> Event:
        """
        结构化解码单个事件对象；字段类型不符时抛 ValueError。

        未知字段会被忽略，缺失的字符串字段按空串处理。
        """
        if not isinstance(obj, dict):
            raise ValueError(f"event must be a JSON object, got {type(obj).__name__}")

        time_s = obj.get("time")
        occurred: datetime | None = None
        if time_s not in (None, ""):
            if not isinstance(time_s, str):
                raise ValueError(f"field 'time' must be a string, got {type(time_s).__name__}")
            occurred = parse_rfc3339_datetime(time_s)

        data = obj.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"field 'data' must be a JSON object, got {type(data).__name__}")

        return cls(
            id=_get_str(obj, "id"),
            specversion=_get_str(obj, "specversion"),
            type=_get_str(obj, "type"),
            source=_get_str(obj, "source"),
            time=occurred,
            subject=_get_str(obj, "subject"),
            method=_get_optional_str(obj, "method"),
            datacontenttype=_get_optional_str(obj, "datacontenttype"),
            data=data,
        )

    def to_json_dict(self) -> dict[str, Any]:
        """
        序列化为 HTTP feeds 线上字段名；可选字段未设置时省略。
        """
        out: dict[str, Any] = {
            "specversion": self.specversion,
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "time": self.time.isoformat().replace("+00:00", "Z") if self.time else None,
            "subject": self.subject,
        }
        if self.method:
            out["method"] = self.method
        if self.datacontenttype:
            out["datacontenttype"] = self.datacontenttype
        if self.data:
            out["data"] = dict(self.data)
        return out
