"""
遙測蒐集

產生 agent 端環境的遙測快照。每個可選來源各自獨立取得，
任何一項失敗都只會讓該欄位缺席，不會阻擋整份快照。
"""

import asyncio
import locale
import logging
import os
import platform
import shutil
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

import httpx
import psutil

from session_relay import __version__
from session_relay.base.data_structures import IP_GEO_ACCURACY, UNKNOWN_IP
from session_relay.config import RelayConfig
from session_relay.schemas import Coordinates, IpGeo, TelemetryPayload, utc_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 設定了固定座標但未指定精確度時使用（公尺）
DEFAULT_FIXED_ACCURACY = 50.0

# 網卡名稱前綴 → 網路類型
_INTERFACE_KINDS = [
    (("eth", "en"), "ethernet"),
    (("wl", "wifi"), "wifi"),
    (("ww", "rmnet", "usb"), "cellular"),
]


class TelemetryCollector:
    """
    遙測蒐集器

    精簡模式（reduced=True）下不使用設定的精確座標，只採用 IP 推估位置。
    """

    def __init__(self, config: RelayConfig | None = None) -> None:
        self._config = config or RelayConfig.from_env()

    async def collect(self, reduced: bool = False) -> TelemetryPayload:
        """
        產生遙測快照

        Args:
            reduced: 是否為精簡蒐集模式

        Returns:
            TelemetryPayload: 遙測快照
        """
        ip_data, battery, gpu, connection_type, device_memory = await asyncio.gather(
            self._fetch_ip_details(),
            self._safe("battery", self._get_battery_level),
            self._safe("gpu", self._get_gpu_info),
            self._safe("connection_type", self._get_connection_type),
            self._safe("device_memory", self._get_device_memory),
        )

        width, height = self._get_viewport()
        payload = TelemetryPayload(
            ip=str(ip_data.get("ip") or UNKNOWN_IP),
            user_agent=f"SessionRelay/{__version__} ({platform.system()} {platform.release()}; Python {platform.python_version()})",
            platform=f"{platform.system()} {platform.machine()}".strip(),
            language=self._get_language(),
            screen_width=width,
            screen_height=height,
            vendor=platform.python_implementation(),
            timestamp=utc_timestamp(),
            battery=battery,
            gpu=gpu,
            coords=self._resolve_coords(ip_data, reduced),
            ip_geo=self._build_ip_geo(ip_data),
            hardware_concurrency=os.cpu_count(),
            device_memory=device_memory,
            connection_type=connection_type,
            timezone=datetime.now().astimezone().tzname(),
            is_reduced=reduced,
        )
        logger.info(f"📊 遙測快照完成: ip={payload.ip}, platform={payload.platform}, coords={'有' if payload.coords else '無'}")
        return payload

    async def _safe(self, name: str, func: Callable[[], Awaitable[T]]) -> T | None:
        """執行單一來源，失敗時回傳 None"""
        try:
            return await func()
        except Exception as e:
            logger.debug(f"無法取得 {name}: {e}")
            return None

    # ═══════════════════════════════════════════════════════════════════════════════
    # 各項來源
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _fetch_ip_details(self) -> dict[str, Any]:
        """查詢對外 IP 與推估位置，失敗時回傳 UNKNOWN_IP"""
        try:
            async with httpx.AsyncClient(timeout=self._config.http_timeout) as client:
                response = await client.get(self._config.ip_lookup_url)
                response.raise_for_status()
                data = response.json()
            if isinstance(data, dict):
                return data
            logger.warning("IP 查詢回應格式錯誤")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"無法取得 IP 資訊: {e}")
        return {"ip": UNKNOWN_IP}

    async def _get_battery_level(self) -> int | None:
        battery = await asyncio.to_thread(psutil.sensors_battery)
        if battery is None:
            return None
        return round(battery.percent)

    async def _get_device_memory(self) -> float | None:
        memory = await asyncio.to_thread(psutil.virtual_memory)
        return round(memory.total / 1024**3, 1)

    async def _get_gpu_info(self) -> str | None:
        """透過 nvidia-smi 查詢 GPU 名稱"""
        try:
            process = await asyncio.create_subprocess_exec(
                "nvidia-smi",
                "--query-gpu=name",
                "--format=csv,noheader",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=2.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return None

        if process.returncode != 0:
            return None
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        return lines[0].strip() if lines else None

    async def _get_connection_type(self) -> str | None:
        stats = await asyncio.to_thread(psutil.net_if_stats)
        for name, stat in stats.items():
            if not stat.isup or name.startswith("lo"):
                continue
            lowered = name.lower()
            for prefixes, kind in _INTERFACE_KINDS:
                if lowered.startswith(prefixes):
                    return kind
        return None

    def _get_viewport(self) -> tuple[int, int]:
        if self._config.viewport:
            return self._config.viewport
        size = shutil.get_terminal_size()
        return size.columns, size.lines

    def _get_language(self) -> str:
        lang = locale.getlocale()[0] or os.getenv("LANG", "").split(".")[0]
        if not lang or lang in ("C", "POSIX"):
            return "und"
        return lang.replace("_", "-")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 位置資訊
    # ═══════════════════════════════════════════════════════════════════════════════

    def _resolve_coords(self, ip_data: dict[str, Any], reduced: bool) -> Coordinates | None:
        if reduced:
            latitude = ip_data.get("latitude")
            longitude = ip_data.get("longitude")
            if isinstance(latitude, (int, float)) and isinstance(longitude, (int, float)):
                return Coordinates(latitude=float(latitude), longitude=float(longitude), accuracy=IP_GEO_ACCURACY)
            return None

        if self._config.latitude is not None and self._config.longitude is not None:
            return Coordinates(
                latitude=self._config.latitude,
                longitude=self._config.longitude,
                accuracy=self._config.accuracy if self._config.accuracy is not None else DEFAULT_FIXED_ACCURACY,
            )
        return None

    @staticmethod
    def _build_ip_geo(ip_data: dict[str, Any]) -> IpGeo | None:
        def text(key: str) -> str | None:
            value = ip_data.get(key)
            return value if isinstance(value, str) and value else None

        geo = IpGeo(city=text("city"), region=text("region"), country=text("country_name"), isp=text("org"))
        if not any((geo.city, geo.region, geo.country, geo.isp)):
            return None
        return geo
