"""
日誌設定模組

控制台輸出依等級上色，警告以上另寫入輪替日誌檔。
controller 與 agent 共用同一套設定，只差在日誌檔名。
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

# 固定在 INFO 的外部套件（DEBUG 時會洗版）
EXTERNAL_LOG = [
    "aiomqtt",
    "paho",
    "asyncio",
    "httpx",
    "httpcore",
    "PIL",
]

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FORMAT = "[%(asctime)s][%(levelname)-8s][%(name)s:%(lineno)d] %(message)s"

# 預設日誌目錄：專案根目錄的 logs/
DEFAULT_LOG_DIR = Path(__file__).parent.parent.parent.parent / "logs"

# 日誌檔輪替：單檔 10 MB，保留 5 份
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# 等級 → 256 色 ANSI 代碼（前景, 背景）
_LEVEL_COLORS: dict[int, tuple[int, int | None]] = {
    logging.DEBUG: (245, None),   # 灰色
    logging.INFO: (2, None),      # 綠色
    logging.WARNING: (3, None),   # 黃色
    logging.ERROR: (1, None),     # 紅色
    logging.CRITICAL: (15, 1),    # 紅底白字
}

_RESET = "\033[0m"


def _ansi_prefix(fg: int, bg: int | None) -> str:
    codes = [f"38;5;{fg}"]
    if bg is not None:
        codes.append(f"48;5;{bg}")
    return f"\033[{';'.join(codes)}m"


class ColoredFormatter(logging.Formatter):
    """依日誌等級為整行加上 ANSI 顏色"""

    _prefixes = {level: _ansi_prefix(fg, bg) for level, (fg, bg) in _LEVEL_COLORS.items()}

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        prefix = self._prefixes.get(record.levelno)
        return f"{prefix}{message}{_RESET}" if prefix else message


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    # Windows 舊版終端機不支援 ANSI
    formatter_cls = logging.Formatter if sys.platform == "win32" else ColoredFormatter
    handler.setFormatter(formatter_cls(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(path: Path, level: int) -> logging.Handler | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=str(path),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        sys.stderr.write(f"警告: 無法建立日誌檔案 {path}: {e}\n")
        return None
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    log_file: str = "session_relay.log",
    console_log_level: int = logging.INFO,
    file_log_level: int = logging.WARNING,
    log_dir: str | Path | None = None,
) -> None:
    """
    設定全域日誌系統，重複呼叫會取代先前的 handler。

    Args:
        log_file: 日誌檔名（位於 log_dir 之下）
        console_log_level: 控制台日誌等級，logging.NOTSET 表示不輸出
        file_log_level: 檔案日誌等級，logging.NOTSET 表示不寫檔
        log_dir: 日誌目錄，預設為專案根目錄的 logs/
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if file_log_level != logging.NOTSET:
        file_handler = _file_handler(Path(log_dir or DEFAULT_LOG_DIR) / log_file, file_log_level)
        if file_handler is not None:
            root_logger.addHandler(file_handler)

    if console_log_level != logging.NOTSET:
        root_logger.addHandler(_console_handler(console_log_level))

    for log_name in EXTERNAL_LOG:
        logging.getLogger(log_name).setLevel(logging.INFO)

    root_logger.debug(f"日誌系統設定完成（控制台: {logging.getLevelName(console_log_level)}）")
