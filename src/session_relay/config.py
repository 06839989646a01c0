"""
環境設定與常數

集中管理所有配置項，從環境變數（與專案根目錄的 .env）載入。
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# 基本設定
# ═══════════════════════════════════════════════════════════════════════════════
# 專案根目錄
PROJECT_ROOT = Path(__file__).parent.parent.parent

# 載入 .env 檔案
ENV_PATH = PROJECT_ROOT / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH)
    logger.info(f"📁 已載入環境設定檔: {ENV_PATH}")

# ═══════════════════════════════════════════════════════════════════════════════
# Broker 設定
# ═══════════════════════════════════════════════════════════════════════════════
DEFAULT_BROKER_URL = "wss://broker.emqx.io:8084/mqtt"
DEFAULT_TOPIC_PREFIX = "pegasus/roadsec"
DEFAULT_CLIENT_ID_PREFIX = "pegasus"

# scheme -> (transport, 預設 port, 是否使用 TLS)
_SCHEME_DEFAULTS: dict[str, tuple[str, int, bool]] = {
    "mqtt": ("tcp", 1883, False),
    "tcp": ("tcp", 1883, False),
    "mqtts": ("tcp", 8883, True),
    "ssl": ("tcp", 8883, True),
    "ws": ("websockets", 80, False),
    "wss": ("websockets", 443, True),
}

# ═══════════════════════════════════════════════════════════════════════════════
# 遙測設定
# ═══════════════════════════════════════════════════════════════════════════════
DEFAULT_IP_LOOKUP_URL = "https://ipapi.co/json/"


@dataclass(frozen=True)
class BrokerEndpoint:
    """Broker 連線位址（由 URL 拆解而來）"""

    hostname: str
    port: int
    transport: str = "tcp"
    websocket_path: str | None = None
    use_tls: bool = False

    @classmethod
    def from_url(cls, url: str) -> "BrokerEndpoint":
        """
        解析 Broker URL

        支援 mqtt://、mqtts://、ws://、wss:// 四種格式，例如
        wss://broker.emqx.io:8084/mqtt

        Raises:
            ValueError: 不支援的 scheme 或缺少主機名稱
        """
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()
        if scheme not in _SCHEME_DEFAULTS:
            raise ValueError(f"不支援的 Broker URL scheme: {parsed.scheme!r}")
        if not parsed.hostname:
            raise ValueError(f"Broker URL 缺少主機名稱: {url!r}")

        transport, default_port, use_tls = _SCHEME_DEFAULTS[scheme]
        websocket_path = None
        if transport == "websockets":
            websocket_path = parsed.path or "/mqtt"

        return cls(
            hostname=parsed.hostname,
            port=parsed.port or default_port,
            transport=transport,
            websocket_path=websocket_path,
            use_tls=use_tls,
        )


def _parse_viewport(value: str) -> tuple[int, int] | None:
    """解析 "1280x720" 格式的畫面尺寸"""
    if not value:
        return None
    try:
        width, height = value.lower().split("x", 1)
        return int(width), int(height)
    except ValueError:
        logger.warning(f"⚠️ AGENT_VIEWPORT 格式錯誤（應為 WxH）: {value}")
        return None


def _optional_float(key: str) -> float | None:
    """讀取可選的浮點數環境變數"""
    value = os.getenv(key, "")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"⚠️ {key} 不是有效的數字: {value}")
        return None


@dataclass
class RelayConfig:
    """中繼設定"""

    # Broker WebSocket 位址
    broker_url: str = DEFAULT_BROKER_URL

    # Topic 前綴（後接 session id 與子頻道）
    topic_prefix: str = DEFAULT_TOPIC_PREFIX

    # 連線識別碼前綴（實際 ID 每次連線隨機產生）
    client_id_prefix: str = DEFAULT_CLIENT_ID_PREFIX

    # MQTT keepalive（秒）
    keepalive: int = 60

    # 連線逾時（秒）
    connect_timeout: float = 30.0

    # 重連間隔（秒），固定不遞增
    reconnect_period: float = 2.0

    # 臨時發布連線等待 broker 確認的上限（秒）
    fallback_timeout: float = 5.0

    # 串流設定
    stream_fps: float = 4.0
    frame_max_width: int = 320
    frame_quality: int = 60
    frame_max_bytes: int = 48_000
    stream_stall_seconds: float = 5.0
    frame_dir: Path = field(default_factory=lambda: PROJECT_ROOT / "frames")

    # 遙測設定
    ip_lookup_url: str = DEFAULT_IP_LOOKUP_URL
    http_timeout: float = 5.0
    viewport: tuple[int, int] | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None

    @property
    def endpoint(self) -> BrokerEndpoint:
        """Broker 連線位址"""
        return BrokerEndpoint.from_url(self.broker_url)

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """從環境變數載入配置"""
        return cls(
            broker_url=os.getenv("RELAY_BROKER_URL", DEFAULT_BROKER_URL),
            topic_prefix=os.getenv("RELAY_TOPIC_PREFIX", DEFAULT_TOPIC_PREFIX),
            client_id_prefix=os.getenv("RELAY_CLIENT_ID_PREFIX", DEFAULT_CLIENT_ID_PREFIX),
            keepalive=int(os.getenv("RELAY_KEEPALIVE", "60")),
            connect_timeout=float(os.getenv("RELAY_CONNECT_TIMEOUT", "30")),
            reconnect_period=float(os.getenv("RELAY_RECONNECT_PERIOD", "2.0")),
            fallback_timeout=float(os.getenv("RELAY_FALLBACK_TIMEOUT", "5.0")),
            stream_fps=float(os.getenv("RELAY_STREAM_FPS", "4.0")),
            frame_max_width=int(os.getenv("RELAY_FRAME_MAX_WIDTH", "320")),
            frame_quality=int(os.getenv("RELAY_FRAME_QUALITY", "60")),
            frame_max_bytes=int(os.getenv("RELAY_FRAME_MAX_BYTES", "48000")),
            stream_stall_seconds=float(os.getenv("RELAY_STREAM_STALL_SECONDS", "5.0")),
            frame_dir=Path(os.getenv("RELAY_FRAME_DIR", str(PROJECT_ROOT / "frames"))),
            ip_lookup_url=os.getenv("RELAY_IP_LOOKUP_URL", DEFAULT_IP_LOOKUP_URL),
            http_timeout=float(os.getenv("RELAY_HTTP_TIMEOUT", "5.0")),
            viewport=_parse_viewport(os.getenv("AGENT_VIEWPORT", "")),
            latitude=_optional_float("AGENT_LATITUDE"),
            longitude=_optional_float("AGENT_LONGITUDE"),
            accuracy=_optional_float("AGENT_ACCURACY"),
        )
