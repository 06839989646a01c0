"""
中繼模組

提供 session topic 命名空間與 MQTT 中繼客戶端。
"""

from session_relay.relay.bus import ChannelBus
from session_relay.relay.client import RelayClient
from session_relay.relay.namespace import TopicNamespace, namespace

__all__ = ["ChannelBus", "RelayClient", "TopicNamespace", "namespace"]
