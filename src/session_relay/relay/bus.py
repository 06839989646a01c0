"""
子頻道事件匯流排

每個子頻道維護一組 handler，RelayClient 收到訊息後透過匯流排分派，
新增訊息類型時不需更動 RelayClient 的公開介面。
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from session_relay.base.data_structures import Channel

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None] | None]


class ChannelBus:
    """
    子頻道 → handler 集合

    同步 handler 直接呼叫；非同步 handler 以 task 執行，task 由匯流排持有，
    可在斷線時統一取消。handler 的例外只記錄，不會往外拋。
    """

    def __init__(self) -> None:
        self._handlers: dict[Channel, list[MessageHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def add(self, channel: Channel, handler: MessageHandler) -> None:
        """註冊 handler（同一個 handler 重複註冊只保留一份）"""
        handlers = self._handlers.setdefault(channel, [])
        if handler not in handlers:
            handlers.append(handler)

    def channels(self) -> list[Channel]:
        """有 handler 的子頻道（依 Channel 定義順序）"""
        return [channel for channel in Channel if self._handlers.get(channel)]

    def has_handlers(self, channel: Channel) -> bool:
        return bool(self._handlers.get(channel))

    def emit(self, channel: Channel, message: Any) -> int:
        """
        分派訊息給子頻道的所有 handler

        Returns:
            被呼叫的 handler 數量
        """
        handlers = list(self._handlers.get(channel, []))
        for handler in handlers:
            try:
                result = handler(message)
            except Exception:
                logger.exception(f"子頻道 {channel.value} 的 handler 執行失敗")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
        return len(handlers)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"非同步 handler 執行失敗: {exc!r}", exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def cancel_pending(self) -> None:
        """取消所有尚未完成的 handler task"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def clear(self) -> None:
        """清除所有 handler"""
        self._handlers.clear()
