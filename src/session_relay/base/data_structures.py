"""
資料結構模組

定義中繼協議共用的列舉類別與常數。
"""

from enum import Enum

# ═══════════════════════════════════════════════════════════════════════════════
# 列舉類別
# ═══════════════════════════════════════════════════════════════════════════════


class Channel(Enum):
    """Session 底下固定的三個子頻道（topic 後綴）。"""

    DATA = "data"      # agent → controller，一次性遙測
    CMD = "cmd"        # controller → agent，離散指令
    STREAM = "stream"  # agent → controller，影像串流


class DeliveryClass(Enum):
    """傳遞等級，對應 MQTT QoS。"""

    AT_LEAST_ONCE = 1
    BEST_EFFORT = 0

    @property
    def qos(self) -> int:
        return self.value

    @classmethod
    def default_for(cls, channel: Channel) -> "DeliveryClass":
        """各頻道的預設傳遞等級：影像可遺失，其餘盡量送達"""
        if channel is Channel.STREAM:
            return cls.BEST_EFFORT
        return cls.AT_LEAST_ONCE


class CommandType(Enum):
    """controller 可下達的指令類型（沿用線上格式的字串值）"""

    ACTIVATE_CAMERA = "ACTIVATE_CAMERA"
    STOP_CAMERA = "STOP_CAMERA"
    SPEAK = "SPEAK"
    VIBRATE = "VIBRATE"
    PLAY_AUDIO = "PLAY_AUDIO"
    GLITCH = "GLITCH"


class CameraState(Enum):
    """相機能力的狀態"""

    IDLE = "idle"
    ACTIVE = "active"


# ═══════════════════════════════════════════════════════════════════════════════
# 常數
# ═══════════════════════════════════════════════════════════════════════════════
UNKNOWN_IP = "UNKNOWN_IP"

# IP 推估座標的精確度（公尺）
IP_GEO_ACCURACY = 5000

DEFAULT_VIBRATE_PATTERN = [200, 100, 200]
DEFAULT_GLITCH_DURATION_MS = 3000
