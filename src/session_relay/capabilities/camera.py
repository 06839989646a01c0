"""
相機能力

狀態機 IDLE → ACTIVE → IDLE。重複開啟或重複關閉皆為 no-op；
取得裝置失敗時維持 IDLE，只記錄一次診斷事件，不自動重試。
"""

import asyncio
import logging

from session_relay.base.data_structures import CameraState
from session_relay.diagnostics import Diagnostics
from session_relay.schemas import CaptureUnavailableError
from session_relay.streaming import StreamingLoop

logger = logging.getLogger(__name__)


class CameraCapability:
    """相機能力；串流迴圈與擷取裝置皆由此能力獨佔管理"""

    def __init__(self, loop: StreamingLoop, diagnostics: Diagnostics | None = None) -> None:
        self._loop = loop
        self._diagnostics = diagnostics or Diagnostics()
        self._state = CameraState.IDLE
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CameraState:
        return self._state

    async def activate(self) -> bool:
        """
        開啟相機並開始串流

        Returns:
            是否發生狀態轉換
        """
        async with self._lock:
            if self._state is CameraState.ACTIVE:
                logger.debug("相機已在串流中，略過")
                return False
            try:
                await self._loop.start()
            except CaptureUnavailableError as e:
                self._unavailable(str(e))
                return False
            except Exception as e:
                self._unavailable(f"{type(e).__name__}: {e}")
                return False
            self._state = CameraState.ACTIVE
            logger.info("📷 相機狀態: IDLE → ACTIVE")
            return True

    def _unavailable(self, reason: str) -> None:
        logger.warning(f"❌ 無法取得相機: {reason}")
        self._diagnostics.capability_errors += 1
        self._diagnostics.record("camera_unavailable", reason)

    async def deactivate(self) -> bool:
        """
        停止串流並釋放相機

        Returns:
            是否發生狀態轉換
        """
        async with self._lock:
            if self._state is CameraState.IDLE:
                logger.debug("相機未啟用，略過")
                return False
            await self._loop.stop()
            self._state = CameraState.IDLE
            logger.info("📷 相機狀態: ACTIVE → IDLE")
            return True
