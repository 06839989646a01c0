"""
中繼客戶端

包裝與公共 MQTT Broker 的長連線：負責連線、斷線重連、訂閱管理，
以及在長連線尚未建立時以臨時連線送出單一訊息的備援路徑。
"""

import asyncio
import inspect
import json
import logging
import secrets
import ssl
from collections.abc import Callable
from typing import Any

import aiomqtt

from session_relay.base.data_structures import Channel, DeliveryClass
from session_relay.config import RelayConfig
from session_relay.diagnostics import Diagnostics
from session_relay.relay.bus import ChannelBus, MessageHandler
from session_relay.relay.namespace import TopicNamespace, namespace
from session_relay.schemas import MessageFormatError, decode_message

logger = logging.getLogger(__name__)

# identifier -> aiomqtt.Client 相容的非同步 context manager
ClientFactory = Callable[[str], Any]


class RelayClient:
    """
    中繼客戶端

    每個 session 角色持有一個實例，底層連線只由本類別持有，不對外暴露。
    傳輸層錯誤一律在內部記錄並以固定間隔重連，不會拋給呼叫端。
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        client_factory: ClientFactory | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._config = config or RelayConfig.from_env()
        self._client_factory = client_factory or self._create_client
        self._diagnostics = diagnostics or Diagnostics()
        self._bus = ChannelBus()
        self._namespace: TopicNamespace | None = None
        self._on_connected: Callable[[], Any] | None = None
        self._client: Any = None
        self._task: asyncio.Task | None = None
        self._side_tasks: set[asyncio.Task] = set()
        self._connection_count = 0
        self._closing = False

    # ═══════════════════════════════════════════════════════════════════════════════
    # 狀態
    # ═══════════════════════════════════════════════════════════════════════════════

    @property
    def is_connected(self) -> bool:
        """長連線是否已建立"""
        return self._client is not None

    @property
    def session_id(self) -> str | None:
        return self._namespace.session_id if self._namespace else None

    @property
    def connection_count(self) -> int:
        """成功建立（含重連）的次數"""
        return self._connection_count

    @property
    def diagnostics(self) -> Diagnostics:
        return self._diagnostics

    @property
    def subscribed_channels(self) -> list[Channel]:
        return self._bus.channels()

    # ═══════════════════════════════════════════════════════════════════════════════
    # 連線管理
    # ═══════════════════════════════════════════════════════════════════════════════

    def connect(
        self,
        session_id: str,
        on_connected: Callable[[], Any] | None = None,
        *,
        on_telemetry: MessageHandler | None = None,
        on_command: MessageHandler | None = None,
        on_frame: MessageHandler | None = None,
    ) -> bool:
        """
        建立長連線

        已連線或連線進行中時為 no-op。只訂閱有提供 handler 的子頻道。

        Args:
            session_id: Session 識別碼
            on_connected: 每次（重新）連線成功後呼叫一次
            on_telemetry: data 子頻道 handler
            on_command: cmd 子頻道 handler
            on_frame: stream 子頻道 handler

        Returns:
            是否啟動了新的連線
        """
        if self._task is not None and not self._task.done():
            if self.session_id != session_id:
                logger.warning(f"⚠️ 已連線至 session {self.session_id}，忽略 session {session_id} 的連線請求")
            else:
                logger.debug("中繼已連線或連線中，略過重複的 connect")
            return False

        self._closing = False
        self._namespace = namespace(session_id, self._config.topic_prefix)
        self._on_connected = on_connected
        for channel, handler in (
            (Channel.DATA, on_telemetry),
            (Channel.CMD, on_command),
            (Channel.STREAM, on_frame),
        ):
            if handler is not None:
                self._bus.add(channel, handler)

        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"relay-{session_id}")
        return True

    def on(self, channel: Channel, handler: MessageHandler) -> None:
        """註冊額外的子頻道 handler；連線中時立即補訂閱"""
        newly_used = not self._bus.has_handlers(channel)
        self._bus.add(channel, handler)
        if newly_used and self._client is not None:
            task = asyncio.ensure_future(self._subscribe(self._client, channel))
            self._track(task)
            task.add_done_callback(self._on_subscribe_done)

    async def disconnect(self) -> None:
        """關閉長連線並清除所有狀態，可重複呼叫"""
        self._closing = True

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        side_tasks = list(self._side_tasks)
        for side_task in side_tasks:
            side_task.cancel()
        if side_tasks:
            await asyncio.gather(*side_tasks, return_exceptions=True)
        self._side_tasks.clear()

        await self._bus.cancel_pending()
        self._bus.clear()
        self._client = None
        self._on_connected = None

        if self._namespace is not None:
            logger.info(f"🛑 中繼連線已關閉: session {self._namespace.session_id}")
        self._namespace = None

    async def _run(self) -> None:
        """連線主迴圈：斷線後以固定間隔無限重連，直到 disconnect()"""
        while not self._closing and self._namespace is not None:
            identifier = self._new_identifier()
            logger.info(f"🔗 正在連接 Broker: {self._config.broker_url} (client_id={identifier})")
            try:
                async with self._client_factory(identifier) as client:
                    for channel in self._bus.channels():
                        await self._subscribe(client, channel)
                    self._client = client
                    self._connection_count += 1
                    logger.info(f"✅ 中繼連線已建立: {self._namespace.base}")
                    self._notify_connected()

                    async for message in client.messages:
                        self._handle_message(message)

                logger.warning("🔴 Broker 連線已關閉")
            except aiomqtt.MqttError as e:
                logger.warning(f"🔴 Broker 連線中斷: {e}")
            except OSError as e:
                logger.warning(f"🔴 無法連接 Broker: {e}")
            except Exception as e:
                logger.exception(f"中繼連線發生未預期錯誤: {e}")
            finally:
                self._client = None

            if self._closing:
                break
            logger.info(f"嘗試重新連接（{self._config.reconnect_period}秒後）...")
            await asyncio.sleep(self._config.reconnect_period)

    def _create_client(self, identifier: str) -> aiomqtt.Client:
        """依設定建立 aiomqtt 客戶端"""
        endpoint = self._config.endpoint
        return aiomqtt.Client(
            hostname=endpoint.hostname,
            port=endpoint.port,
            identifier=identifier,
            keepalive=self._config.keepalive,
            clean_session=True,
            transport=endpoint.transport,
            websocket_path=endpoint.websocket_path,
            tls_context=ssl.create_default_context() if endpoint.use_tls else None,
            timeout=self._config.connect_timeout,
        )

    def _new_identifier(self) -> str:
        """每次連線都使用隨機 client id，與 session id 無關"""
        return f"{self._config.client_id_prefix}_{secrets.token_hex(3)}"

    async def _subscribe(self, client: Any, channel: Channel) -> None:
        if self._namespace is None:
            raise RuntimeError("尚未指定 session，無法訂閱")
        topic = self._namespace.topic(channel)
        await client.subscribe(topic, qos=DeliveryClass.default_for(channel).qos)
        logger.debug(f"📡 已訂閱: {topic}")

    def _notify_connected(self) -> None:
        if self._on_connected is None:
            return
        try:
            result = self._on_connected()
        except Exception:
            logger.exception("on_connected 回呼執行失敗")
            return
        if inspect.isawaitable(result):
            self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Task) -> None:
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    def _on_subscribe_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._diagnostics.record("subscribe_failed", str(exc))
            logger.error(f"❌ 補訂閱失敗，下次重連時再訂閱: {exc!r}")

    # ═══════════════════════════════════════════════════════════════════════════════
    # 訊息處理
    # ═══════════════════════════════════════════════════════════════════════════════

    def _handle_message(self, message: Any) -> None:
        """解析收到的訊息並依子頻道分派；格式錯誤的訊息直接丟棄"""
        topic = str(message.topic)
        channel = self._namespace.channel_for(topic) if self._namespace else None
        if channel is None:
            logger.debug(f"忽略非本 session 的 topic: {topic}")
            return

        self._diagnostics.received += 1
        try:
            raw = message.payload
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            decoded = decode_message(channel, json.loads(raw))
        except (ValueError, TypeError, MessageFormatError) as e:
            self._diagnostics.dropped += 1
            logger.warning(f"⚠️ 無法解析 {channel.value} 訊息，已丟棄: {e}")
            return

        self._bus.emit(channel, decoded)

    async def publish(
        self,
        session_id: str,
        channel: Channel,
        payload: Any,
        delivery: DeliveryClass | None = None,
        *,
        fallback: bool = True,
    ) -> bool:
        """
        發布訊息到 session 的子頻道

        長連線已建立時直接發布；否則（fallback=True）開一條臨時連線送出
        單一訊息，等待 broker 確認（有上限）後立即關閉。

        Args:
            session_id: Session 識別碼
            channel: 子頻道
            payload: dict 或具有 to_dict() 的資料物件
            delivery: 傳遞等級，預設依子頻道決定
            fallback: 未連線時是否使用臨時連線

        Returns:
            broker 是否接受此訊息
        """
        delivery = delivery or DeliveryClass.default_for(channel)
        body = json.dumps(payload.to_dict() if hasattr(payload, "to_dict") else payload, ensure_ascii=False)

        client = self._client
        if client is not None and self._namespace is not None and self._namespace.session_id == session_id:
            topic = self._namespace.topic(channel)
            try:
                await client.publish(topic, body, qos=delivery.qos)
                return True
            except aiomqtt.MqttError as e:
                logger.warning(f"⚠️ 發布失敗 ({topic}): {e}")
                return False

        if not fallback:
            logger.debug(f"中繼未連線，丟棄 {channel.value} 訊息")
            return False

        topic = namespace(session_id, self._config.topic_prefix).topic(channel)
        task = asyncio.ensure_future(self._publish_once(topic, body, delivery))
        self._track(task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task.cancelled():
            logger.info(f"臨時發布已取消: {topic}")
            return False
        return task.result()

    async def _publish_once(self, topic: str, body: str, delivery: DeliveryClass) -> bool:
        """以臨時連線送出單一訊息，送出後立即關閉"""
        identifier = self._new_identifier()
        logger.info(f"📤 以臨時連線發布: {topic} (client_id={identifier})")
        try:
            async with self._client_factory(identifier) as client:
                await asyncio.wait_for(
                    client.publish(topic, body, qos=delivery.qos),
                    timeout=self._config.fallback_timeout,
                )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ 等待 broker 確認逾時（{self._config.fallback_timeout}秒），訊息可能遺失: {topic}")
            return False
        except (aiomqtt.MqttError, OSError) as e:
            logger.warning(f"❌ 臨時連線發布失敗 ({topic}): {e}")
            return False
