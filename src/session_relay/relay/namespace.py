"""
Topic 命名空間

由 session id 決定性地推導出三個子頻道 topic。
controller 與 agent 只要持有相同的 session id 就會得到相同的 topic，
這是雙方互相發現的唯一依據。
"""

from dataclasses import dataclass

from session_relay.base.data_structures import Channel
from session_relay.config import DEFAULT_TOPIC_PREFIX


@dataclass(frozen=True)
class TopicNamespace:
    """單一 session 的 topic 集合"""

    session_id: str
    prefix: str = DEFAULT_TOPIC_PREFIX

    @property
    def base(self) -> str:
        return f"{self.prefix}/{self.session_id}"

    @property
    def data(self) -> str:
        return self.topic(Channel.DATA)

    @property
    def cmd(self) -> str:
        return self.topic(Channel.CMD)

    @property
    def stream(self) -> str:
        return self.topic(Channel.STREAM)

    def topic(self, channel: Channel) -> str:
        """取得子頻道的完整 topic"""
        return f"{self.base}/{channel.value}"

    def topics(self) -> dict[Channel, str]:
        return {channel: self.topic(channel) for channel in Channel}

    def channel_for(self, topic: str) -> Channel | None:
        """由收到的 topic 反查子頻道，不屬於此 session 時回傳 None"""
        for channel in Channel:
            if topic == self.topic(channel):
                return channel
        return None


def namespace(session_id: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> TopicNamespace:
    """建立 session 的 topic 命名空間（純函式）"""
    return TopicNamespace(session_id=session_id, prefix=prefix)
