"""
一次性效果能力

語音播報、震動、播放音訊、畫面干擾。每道指令立即且獨立執行，
不排隊、不合併，重複的指令就重複執行效果。實際效果交給 EffectBackend。
"""

import logging
from typing import Any, Protocol

from session_relay.base.data_structures import DEFAULT_GLITCH_DURATION_MS, DEFAULT_VIBRATE_PATTERN
from session_relay.schemas import CommandMessage

logger = logging.getLogger(__name__)


class EffectBackend(Protocol):
    """宿主環境提供的效果實作"""

    async def speak(self, text: str, lang: str | None) -> None: ...

    async def vibrate(self, pattern: list[int]) -> None: ...

    async def play_audio(self, url: str) -> None: ...

    async def glitch(self, duration_ms: int) -> None: ...


class LoggingEffects:
    """無畫面的 agent 使用：效果寫入日誌並保留紀錄"""

    def __init__(self) -> None:
        self.history: list[tuple[str, dict[str, Any]]] = []

    async def speak(self, text: str, lang: str | None) -> None:
        self.history.append(("speak", {"text": text, "lang": lang}))
        logger.info(f"🗣️ 語音播報: {text!r} ({lang or 'default'})")

    async def vibrate(self, pattern: list[int]) -> None:
        self.history.append(("vibrate", {"pattern": pattern}))
        logger.info(f"📳 震動: {pattern}")

    async def play_audio(self, url: str) -> None:
        self.history.append(("play_audio", {"url": url}))
        logger.info(f"🔊 播放音訊: {url}")

    async def glitch(self, duration_ms: int) -> None:
        self.history.append(("glitch", {"duration_ms": duration_ms}))
        logger.info(f"⚡ 畫面干擾 {duration_ms}ms")


class EffectCapabilities:
    """將指令 payload 轉為 EffectBackend 呼叫；payload 不合法時拋出 ValueError"""

    def __init__(self, backend: EffectBackend) -> None:
        self._backend = backend

    async def handle_speak(self, command: CommandMessage) -> None:
        payload = command.payload or {}
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("SPEAK 指令必須提供 text")
        lang = payload.get("lang")
        await self._backend.speak(text, lang if isinstance(lang, str) else None)

    async def handle_vibrate(self, command: CommandMessage) -> None:
        pattern = (command.payload or {}).get("pattern", DEFAULT_VIBRATE_PATTERN)
        if not isinstance(pattern, list) or not all(isinstance(p, int) and not isinstance(p, bool) and p >= 0 for p in pattern):
            raise ValueError("VIBRATE 的 pattern 必須是非負整數陣列（毫秒）")
        await self._backend.vibrate(list(pattern))

    async def handle_play_audio(self, command: CommandMessage) -> None:
        url = (command.payload or {}).get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("PLAY_AUDIO 指令必須提供 url")
        await self._backend.play_audio(url)

    async def handle_glitch(self, command: CommandMessage) -> None:
        duration = (command.payload or {}).get("duration_ms", DEFAULT_GLITCH_DURATION_MS)
        if not isinstance(duration, int) or isinstance(duration, bool) or duration <= 0:
            raise ValueError("GLITCH 的 duration_ms 必須是正整數")
        await self._backend.glitch(duration)
