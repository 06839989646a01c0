"""
即時影像串流迴圈

以固定頻率執行「擷取 → 編碼 → 發布」，發布走 stream 子頻道（best-effort，
遺失不重送，下一幀自然取代）。由相機能力啟動與停止。
"""

import asyncio
import base64
import io
import logging
from collections.abc import Awaitable, Callable

from PIL import Image

from session_relay.diagnostics import Diagnostics
from session_relay.media import MediaSource
from session_relay.schemas import StreamFrame, utc_timestamp

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/jpeg;base64,"

# 壓縮時品質的下限與每次遞減量
MIN_QUALITY = 20
QUALITY_STEP = 10

FramePublisher = Callable[[StreamFrame], Awaitable[bool]]


def encode_frame(image: Image.Image, max_width: int = 320, quality: int = 60, max_bytes: int = 48_000) -> str:
    """
    將畫面編碼為有大小上限的 JPEG data URL

    Args:
        image: 原始畫面
        max_width: 最大寬度，超過時等比縮小
        quality: 起始 JPEG 品質
        max_bytes: base64 內容長度上限，超過時逐步降低品質

    Returns:
        data:image/jpeg;base64,... 字串
    """
    frame = image.convert("RGB")
    if frame.width > max_width:
        height = max(1, round(frame.height * max_width / frame.width))
        frame = frame.resize((max_width, height), Image.Resampling.BILINEAR)

    current_quality = quality
    while True:
        buffer = io.BytesIO()
        frame.save(buffer, format="JPEG", quality=current_quality)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        if len(encoded) <= max_bytes or current_quality <= MIN_QUALITY:
            break
        current_quality = max(MIN_QUALITY, current_quality - QUALITY_STEP)

    return DATA_URL_PREFIX + encoded


def decode_frame(data_url: str) -> bytes:
    """取出 data URL 中的圖片 bytes"""
    _, _, encoded = data_url.partition("base64,")
    return base64.b64decode(encoded)


class StreamingLoop:
    """
    串流迴圈

    start() 取得擷取裝置並建立計時 task；stop() 在第一個 await 之前就取消
    該次 start 建立的 task 並作廢其 token，因此 stop() 回傳後不會再有新的發布
    （至多一個已在進行中的 tick）。重複 start / stop 不會累積 task；
    在 start() 取得裝置途中呼叫 stop() 時，該次 start 會釋放裝置並放棄啟動。
    """

    def __init__(
        self,
        source: MediaSource,
        publish: FramePublisher,
        *,
        fps: float = 4.0,
        max_width: int = 320,
        quality: int = 60,
        max_bytes: int = 48_000,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps 必須大於 0")
        self._source = source
        self._publish = publish
        self._period = 1.0 / fps
        self._max_width = max_width
        self._quality = quality
        self._max_bytes = max_bytes
        self._diagnostics = diagnostics or Diagnostics()
        self._task: asyncio.Task | None = None
        self._token: object | None = None

    @property
    def is_running(self) -> bool:
        return self._token is not None

    async def start(self) -> bool:
        """
        取得裝置並開始串流

        Returns:
            是否真的啟動（已在串流中時回傳 False）

        Raises:
            CaptureUnavailableError: 無法取得擷取裝置
        """
        if self._token is not None:
            return False

        token = object()
        self._token = token
        try:
            await self._source.acquire()
        except BaseException:
            if self._token is token:
                self._token = None
            raise

        if self._token is not token:
            # 取得裝置期間已被 stop()
            await self._release()
            logger.info("⏹️ 串流在啟動途中被停止")
            return False

        self._task = asyncio.get_running_loop().create_task(self._loop(token), name="stream-loop")
        logger.info(f"🎥 串流已啟動（{1 / self._period:.1f} fps）")
        return True

    async def stop(self) -> bool:
        """
        停止串流並釋放裝置

        Returns:
            是否真的停止（未在串流時回傳 False）
        """
        task, self._task = self._task, None
        token, self._token = self._token, None
        if token is None:
            return False
        if task is None:
            # start() 仍在取得裝置，由它負責釋放
            return True

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await self._release()
        logger.info("⏹️ 串流已停止")
        return True

    async def _release(self) -> None:
        try:
            await self._source.release()
        except Exception:
            logger.exception("釋放擷取裝置失敗")

    async def _loop(self, token: object) -> None:
        loop = asyncio.get_running_loop()
        while self._token is token:
            started = loop.time()
            await self._tick(token)
            await asyncio.sleep(max(0.0, self._period - (loop.time() - started)))

    async def _tick(self, token: object) -> None:
        """單次擷取與發布；任何錯誤只影響這一幀"""
        try:
            image = await self._source.read_frame()
            if image is None:
                return
            data_url = await asyncio.to_thread(encode_frame, image, self._max_width, self._quality, self._max_bytes)
            if self._token is not token:
                return
            ok = await self._publish(StreamFrame(image=data_url, timestamp=utc_timestamp()))
        except Exception as e:
            self._diagnostics.frames_failed += 1
            logger.warning(f"⚠️ 影像幀處理失敗，略過: {e}")
            return

        if ok:
            self._diagnostics.frames_published += 1
        else:
            self._diagnostics.frames_failed += 1
