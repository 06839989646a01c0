"""
影像來源

定義擷取裝置介面（取得 / 讀取一幀 / 釋放），以及兩種實作：
OpenCV 相機與靜態圖片。擷取裝置在串流期間由 StreamingLoop 獨佔。
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

from PIL import Image

from session_relay.schemas import CaptureUnavailableError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}


class MediaSource(Protocol):
    """擷取裝置介面"""

    async def acquire(self) -> None:
        """取得裝置；失敗時拋出 CaptureUnavailableError"""

    async def read_frame(self) -> Image.Image | None:
        """讀取目前畫面，暫時無畫面時回傳 None"""

    async def release(self) -> None:
        """釋放裝置"""


class OpenCVCameraSource:
    """
    OpenCV 相機來源

    需安裝 camera extra（opencv-python-headless）。所有阻塞呼叫都在執行緒中進行。
    """

    def __init__(self, index: int = 0) -> None:
        self._index = index
        self._capture: Any = None
        self._cv2: Any = None

    async def acquire(self) -> None:
        try:
            import cv2
        except ImportError as e:
            raise CaptureUnavailableError("未安裝 OpenCV，請執行: pip install 'session-relay[camera]'") from e

        capture = await asyncio.to_thread(cv2.VideoCapture, self._index)
        if not capture.isOpened():
            await asyncio.to_thread(capture.release)
            raise CaptureUnavailableError(f"無法開啟相機 #{self._index}（裝置不存在或權限被拒）")

        self._cv2 = cv2
        self._capture = capture
        logger.info(f"📷 已開啟相機 #{self._index}")

    async def read_frame(self) -> Image.Image | None:
        if self._capture is None:
            return None
        ok, frame = await asyncio.to_thread(self._capture.read)
        if not ok:
            return None
        rgb = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)
        return Image.fromarray(rgb)

    async def release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            await asyncio.to_thread(capture.release)
            logger.info(f"📷 已釋放相機 #{self._index}")


class ImageFileSource:
    """
    靜態圖片來源

    path 為單一圖片時每幀回傳同一張；為目錄時依檔名順序循環播放。
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._files: list[Path] = []
        self._position = 0
        self._acquired = False

    async def acquire(self) -> None:
        if self._path.is_dir():
            files = sorted(p for p in self._path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        elif self._path.is_file():
            files = [self._path]
        else:
            files = []

        if not files:
            raise CaptureUnavailableError(f"找不到可用的圖片: {self._path}")

        self._files = files
        self._position = 0
        self._acquired = True
        logger.info(f"🖼️ 已載入 {len(files)} 張圖片作為影像來源")

    async def read_frame(self) -> Image.Image | None:
        if not self._acquired:
            return None
        path = self._files[self._position % len(self._files)]
        self._position += 1
        return await asyncio.to_thread(_load_image, path)

    async def release(self) -> None:
        self._acquired = False
        self._files = []


def _load_image(path: Path) -> Image.Image:
    with Image.open(path) as image:
        image.load()
        return image.copy()
