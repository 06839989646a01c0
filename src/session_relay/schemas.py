"""
資料模型定義

包含遙測快照、指令、影像幀等訊息格式，以及中繼專用的錯誤類型。
線上格式沿用 camelCase JSON，缺少的可選欄位不輸出。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from session_relay.base.data_structures import Channel


# ═══════════════════════════════════════════════════════════════════════════════
# 錯誤類型
# ═══════════════════════════════════════════════════════════════════════════════
class RelayError(Exception):
    """中繼子系統的基礎錯誤類型"""


class MessageFormatError(RelayError):
    """訊息內容無法解析為預期格式"""


class LocatorError(RelayError):
    """分享連結缺少或包含無效的 session id"""


class CaptureUnavailableError(RelayError):
    """擷取裝置無法取得（權限被拒、裝置不存在等）"""


def utc_timestamp() -> str:
    """目前時間的 ISO-8601 字串"""
    return datetime.now(timezone.utc).isoformat()


def _is_kind(value: Any, kind: type | tuple[type, ...]) -> bool:
    kinds = kind if isinstance(kind, tuple) else (kind,)
    # bool 是 int 的子類別，數值欄位不接受 bool
    if isinstance(value, bool) and bool not in kinds:
        return False
    return isinstance(value, kinds)


def _require(data: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    """取出必要欄位並檢查型別"""
    if data.get(key) is None:
        raise MessageFormatError(f"缺少必要欄位: {key}")
    value = data[key]
    if not _is_kind(value, kind):
        raise MessageFormatError(f"欄位型別錯誤: {key}")
    return value


def _optional(data: dict[str, Any], key: str, kind: type | tuple[type, ...]) -> Any:
    """取出可選欄位，型別不符視為缺席"""
    value = data.get(key)
    return value if value is not None and _is_kind(value, kind) else None


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ═══════════════════════════════════════════════════════════════════════════════
# 遙測快照
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class Coordinates:
    """地理座標與精確度半徑（公尺）"""

    latitude: float
    longitude: float
    accuracy: float

    def to_dict(self) -> dict[str, Any]:
        return {"latitude": self.latitude, "longitude": self.longitude, "accuracy": self.accuracy}

    @classmethod
    def from_dict(cls, data: Any) -> Coordinates | None:
        if not isinstance(data, dict):
            return None
        try:
            return cls(
                latitude=float(_require(data, "latitude", (int, float))),
                longitude=float(_require(data, "longitude", (int, float))),
                accuracy=float(_require(data, "accuracy", (int, float))),
            )
        except MessageFormatError:
            return None


@dataclass(frozen=True)
class IpGeo:
    """由 IP 推估的地理資訊"""

    city: str | None = None
    region: str | None = None
    country: str | None = None
    isp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({"city": self.city, "region": self.region, "country": self.country, "isp": self.isp})

    @classmethod
    def from_dict(cls, data: Any) -> IpGeo | None:
        if not isinstance(data, dict):
            return None
        return cls(
            city=_optional(data, "city", str),
            region=_optional(data, "region", str),
            country=_optional(data, "country", str),
            isp=_optional(data, "isp", str),
        )


@dataclass(frozen=True)
class TelemetryPayload:
    """
    Agent 端環境的遙測快照

    每次 agent 連線建立一次、發布一次，之後不再修改。
    可選欄位為 None 代表「未取得」，屬於正常情況。

    Attributes:
        ip: 對外可見的 IP 位址
        user_agent: User-Agent 字串
        platform: 平台名稱
        language: 語系
        screen_width: 畫面寬度
        screen_height: 畫面高度
        vendor: 供應商字串
        timestamp: 擷取時間（ISO-8601）
        battery: 電量百分比
        gpu: GPU renderer 字串
        coords: 地理座標
        ip_geo: IP 推估地理資訊
        hardware_concurrency: CPU 核心數
        device_memory: 記憶體估計（GB）
        max_touch_points: 觸控點數
        color_depth: 色彩深度
        connection_type: 網路類型提示
        timezone: 時區
        is_reduced: 是否為精簡蒐集模式
    """

    ip: str
    user_agent: str
    platform: str
    language: str
    screen_width: int
    screen_height: int
    vendor: str
    timestamp: str
    battery: int | None = None
    gpu: str | None = None
    coords: Coordinates | None = None
    ip_geo: IpGeo | None = None
    hardware_concurrency: int | None = None
    device_memory: float | None = None
    max_touch_points: int | None = None
    color_depth: int | None = None
    connection_type: str | None = None
    timezone: str | None = None
    is_reduced: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        """轉換為線上 JSON 格式（camelCase，省略缺席欄位）"""
        return _compact({
            "ip": self.ip,
            "userAgent": self.user_agent,
            "platform": self.platform,
            "language": self.language,
            "screenWidth": self.screen_width,
            "screenHeight": self.screen_height,
            "vendor": self.vendor,
            "timestamp": self.timestamp,
            "battery": self.battery,
            "gpu": self.gpu,
            "coords": self.coords.to_dict() if self.coords else None,
            "ipGeo": self.ip_geo.to_dict() if self.ip_geo else None,
            "hardwareConcurrency": self.hardware_concurrency,
            "deviceMemory": self.device_memory,
            "maxTouchPoints": self.max_touch_points,
            "colorDepth": self.color_depth,
            "connectionType": self.connection_type,
            "timezone": self.timezone,
            "isStealth": self.is_reduced,
        })

    @classmethod
    def from_dict(cls, data: Any) -> TelemetryPayload:
        """
        由線上 JSON 建立遙測快照

        Raises:
            MessageFormatError: 缺少必要欄位或型別錯誤
        """
        if not isinstance(data, dict):
            raise MessageFormatError("遙測內容必須是 JSON 物件")

        device_memory = _optional(data, "deviceMemory", (int, float))
        return cls(
            ip=_require(data, "ip", str),
            user_agent=_require(data, "userAgent", str),
            platform=_require(data, "platform", str),
            language=_require(data, "language", str),
            screen_width=_require(data, "screenWidth", int),
            screen_height=_require(data, "screenHeight", int),
            vendor=_require(data, "vendor", str),
            timestamp=_require(data, "timestamp", str),
            battery=_optional(data, "battery", int),
            gpu=_optional(data, "gpu", str),
            coords=Coordinates.from_dict(data.get("coords")),
            ip_geo=IpGeo.from_dict(data.get("ipGeo")),
            hardware_concurrency=_optional(data, "hardwareConcurrency", int),
            device_memory=float(device_memory) if device_memory is not None else None,
            max_touch_points=_optional(data, "maxTouchPoints", int),
            color_depth=_optional(data, "colorDepth", int),
            connection_type=_optional(data, "connectionType", str),
            timezone=_optional(data, "timezone", str),
            is_reduced=_optional(data, "isStealth", bool),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# 指令與影像幀
# ═══════════════════════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class CommandMessage:
    """controller → agent 的指令；type 保留原始字串以容納未知類型"""

    type: str
    timestamp: str
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _compact({"type": self.type, "timestamp": self.timestamp, "payload": self.payload})

    @classmethod
    def from_dict(cls, data: Any) -> CommandMessage:
        if not isinstance(data, dict):
            raise MessageFormatError("指令內容必須是 JSON 物件")
        payload = data.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise MessageFormatError("指令 payload 必須是 JSON 物件")
        return cls(
            type=_require(data, "type", str),
            timestamp=str(data.get("timestamp") or ""),
            payload=payload,
        )


@dataclass(frozen=True)
class StreamFrame:
    """agent → controller 的單張影像（data URL），彼此獨立"""

    image: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"image": self.image, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Any) -> StreamFrame:
        if not isinstance(data, dict):
            raise MessageFormatError("影像幀必須是 JSON 物件")
        return cls(
            image=_require(data, "image", str),
            timestamp=str(data.get("timestamp") or ""),
        )


_CHANNEL_SCHEMAS = {
    Channel.DATA: TelemetryPayload,
    Channel.CMD: CommandMessage,
    Channel.STREAM: StreamFrame,
}


def decode_message(channel: Channel, data: Any) -> TelemetryPayload | CommandMessage | StreamFrame:
    """
    將已解析的 JSON 內容轉為該頻道的資料型別

    Raises:
        MessageFormatError: 內容不符合該頻道的格式
    """
    return _CHANNEL_SCHEMAS[channel].from_dict(data)
