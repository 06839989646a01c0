"""
Command Registry 基礎架構

提供指令類型 → 能力 handler 的註冊機制，新增能力時只需註冊，
不必修改集中的分派函式。
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from session_relay.base.data_structures import CommandType
from session_relay.schemas import CommandMessage

CommandHandler = Callable[[CommandMessage], Awaitable[None]]


@dataclass
class CommandDefinition:
    """指令定義，包含說明與 handler"""

    command_type: str
    description: str
    handler: CommandHandler


def _type_value(command_type: CommandType | str) -> str:
    return command_type.value if isinstance(command_type, CommandType) else command_type


class CommandRegistry:
    """
    指令註冊表

    每個 agent session 各自持有一份，不做成全域單例。
    """

    def __init__(self) -> None:
        self._commands: dict[str, CommandDefinition] = {}

    def register(self, command_type: CommandType | str, description: str = "") -> Callable[[CommandHandler], CommandHandler]:
        """
        Decorator 用於註冊指令 handler

        使用方式:
            @registry.register(CommandType.SPEAK, description="語音播報")
            async def handle_speak(command: CommandMessage) -> None:
                ...
        """

        def decorator(handler: CommandHandler) -> CommandHandler:
            self.add(command_type, handler, description)
            return handler

        return decorator

    def add(self, command_type: CommandType | str, handler: CommandHandler, description: str = "") -> None:
        name = _type_value(command_type)
        self._commands[name] = CommandDefinition(command_type=name, description=description, handler=handler)

    def get(self, command_type: CommandType | str) -> CommandDefinition | None:
        return self._commands.get(_type_value(command_type))

    def list_types(self) -> list[str]:
        """列出所有已註冊的指令類型"""
        return list(self._commands)

    def __contains__(self, command_type: object) -> bool:
        if not isinstance(command_type, (CommandType, str)):
            return False
        return _type_value(command_type) in self._commands

    def __len__(self) -> int:
        return len(self._commands)
