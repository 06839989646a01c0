"""
分享連結

controller 將 session id（與精簡蒐集旗標）編碼進 URL fragment，
agent 在任何中繼動作之前解析它。格式：

    {base}#/scan?session={id}[&stealth=true]
"""

import logging
import re
import uuid
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

from session_relay.schemas import LocatorError

logger = logging.getLogger(__name__)

SCAN_ROUTE = "/scan"

# 不可包含 MQTT 萬用字元（+ #）或層級分隔（/）
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Locator:
    """解析後的分享連結"""

    session_id: str
    reduced: bool = False


def new_session_id() -> str:
    """產生新的 session id（每次 controller 執行一次）"""
    return str(uuid.uuid4())


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(session_id))


def build_locator(base_url: str, session_id: str, reduced: bool = False) -> str:
    """
    建立分享連結

    Raises:
        LocatorError: session id 格式無效
    """
    if not is_valid_session_id(session_id):
        raise LocatorError(f"無效的 session id: {session_id!r}")

    params = {"session": session_id}
    if reduced:
        params["stealth"] = "true"
    base = base_url.split("#", 1)[0]
    return f"{base}#{SCAN_ROUTE}?{urlencode(params)}"


def parse_locator(url: str) -> Locator:
    """
    解析分享連結

    Raises:
        LocatorError: 缺少 fragment、session 參數，或 session id 格式無效
    """
    fragment = urlsplit(url).fragment
    if not fragment:
        raise LocatorError("分享連結缺少 fragment（#/scan?session=...）")

    _, _, query = fragment.partition("?")
    if not query:
        raise LocatorError("SESSION_ID_MISSING: 分享連結缺少查詢參數")

    params = parse_qs(query)
    values = params.get("session")
    if not values or not values[0]:
        raise LocatorError("SESSION_ID_MISSING: 分享連結缺少 session 參數")

    session_id = values[0]
    if not is_valid_session_id(session_id):
        raise LocatorError(f"無效的 session id: {session_id!r}")

    flags = params.get("stealth") or params.get("reduced") or ["false"]
    reduced = flags[0].lower() in _TRUE_VALUES
    return Locator(session_id=session_id, reduced=reduced)
