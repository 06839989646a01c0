"""
指令分派

agent 端：解碼後的指令依類型查表交給能力 handler；未知類型直接忽略，
讓舊版 agent 能容忍新版 controller。controller 端：組出帶時間戳的指令。
"""

import logging
from typing import Any

from session_relay.base.data_structures import CommandType
from session_relay.capabilities.base import CommandRegistry
from session_relay.capabilities.camera import CameraCapability
from session_relay.capabilities.effects import EffectCapabilities
from session_relay.diagnostics import Diagnostics
from session_relay.schemas import CommandMessage, utc_timestamp

logger = logging.getLogger(__name__)


def make_command(command_type: CommandType | str, payload: dict[str, Any] | None = None) -> CommandMessage:
    """建立要發送給 agent 的指令"""
    type_value = command_type.value if isinstance(command_type, CommandType) else command_type
    return CommandMessage(type=type_value, timestamp=utc_timestamp(), payload=payload)


class CommandDispatcher:
    """指令分派器；任何失敗都只記錄，不會拋回中繼層"""

    def __init__(self, registry: CommandRegistry, diagnostics: Diagnostics | None = None) -> None:
        self._registry = registry
        self._diagnostics = diagnostics or Diagnostics()

    @property
    def registry(self) -> CommandRegistry:
        return self._registry

    async def dispatch(self, command: CommandMessage) -> bool:
        """
        執行一道指令

        Returns:
            是否成功執行
        """
        definition = self._registry.get(command.type)
        if definition is None:
            self._diagnostics.ignored += 1
            logger.info(f"略過未知指令: {command.type}")
            return False

        logger.info(f"📥 收到指令: {command.type}")
        try:
            await definition.handler(command)
        except ValueError as e:
            self._diagnostics.capability_errors += 1
            logger.warning(f"⚠️ 指令內容無效 ({command.type}): {e}")
            return False
        except Exception:
            self._diagnostics.capability_errors += 1
            logger.exception(f"指令執行失敗: {command.type}")
            return False

        self._diagnostics.handled += 1
        return True


def build_agent_registry(camera: CameraCapability, effects: EffectCapabilities) -> CommandRegistry:
    """註冊 agent 支援的全部指令"""
    registry = CommandRegistry()

    @registry.register(CommandType.ACTIVATE_CAMERA, description="開啟相機並開始串流")
    async def handle_activate_camera(command: CommandMessage) -> None:
        await camera.activate()

    @registry.register(CommandType.STOP_CAMERA, description="停止串流並釋放相機")
    async def handle_stop_camera(command: CommandMessage) -> None:
        await camera.deactivate()

    registry.add(CommandType.SPEAK, effects.handle_speak, description="語音播報")
    registry.add(CommandType.VIBRATE, effects.handle_vibrate, description="震動")
    registry.add(CommandType.PLAY_AUDIO, effects.handle_play_audio, description="播放音訊")
    registry.add(CommandType.GLITCH, effects.handle_glitch, description="畫面干擾")

    logger.debug(f"🧰 已註冊 {len(registry)} 種指令")
    return registry
