"""
Agent 能力模組

相機（有狀態）與一次性效果（無狀態），以及指令註冊表。
"""

from session_relay.capabilities.base import CommandDefinition, CommandHandler, CommandRegistry
from session_relay.capabilities.camera import CameraCapability
from session_relay.capabilities.effects import EffectBackend, EffectCapabilities, LoggingEffects

__all__ = [
    "CameraCapability",
    "CommandDefinition",
    "CommandHandler",
    "CommandRegistry",
    "EffectBackend",
    "EffectCapabilities",
    "LoggingEffects",
]
