"""
Session Relay 主入口

使用方式：
    python -m session_relay controller [--base-url URL] [--reduced]
    python -m session_relay agent "http://host/#/scan?session=..." [--camera 0 | --image PATH]

環境變數：
    RELAY_BROKER_URL    - Broker WebSocket 位址 (預設 wss://broker.emqx.io:8084/mqtt)
    RELAY_TOPIC_PREFIX  - Topic 前綴 (預設 pegasus/roadsec)
    RELAY_FRAME_DIR     - controller 儲存最新影像的目錄
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from session_relay import __version__
from session_relay.base.logging_config import setup_logging
from session_relay.config import RelayConfig
from session_relay.media import ImageFileSource, MediaSource, OpenCVCameraSource
from session_relay.schemas import LocatorError, StreamFrame, TelemetryPayload
from session_relay.session import DEFAULT_BASE_URL, AgentSession, ControllerSession
from session_relay.streaming import decode_frame

logger = logging.getLogger(__name__)

LATEST_FRAME_NAME = "latest.jpg"

# 停滯檢查間隔（秒）
STALL_CHECK_INTERVAL = 1.0

CONSOLE_HELP = """可用指令：
  cam          開啟相機串流
  cam off      停止相機串流
  say TEXT     語音播報
  buzz         震動
  glitch       畫面干擾
  audio URL    播放音訊
  status       顯示目前狀態
  clear        清除遙測快照
  quit         離開"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """解析命令列參數"""
    parser = argparse.ArgumentParser(
        prog="session-relay",
        description="Session Relay - 透過公共 MQTT Broker 連結 controller 與 agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
範例：
  # 啟動 controller，印出分享連結
  session-relay controller --base-url https://example.com/

  # 以精簡蒐集模式產生連結（只使用 IP 推估位置）
  session-relay controller --reduced

  # 以靜態圖片作為影像來源啟動 agent
  session-relay agent "https://example.com/#/scan?session=abc-123" --image ./demo.jpg
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="role", required=True)

    controller = subparsers.add_parser("controller", help="建立 session 並下達指令")
    controller.add_argument(
        "--base-url",
        type=str,
        default=DEFAULT_BASE_URL,
        help=f"分享連結的基底網址 (預設: {DEFAULT_BASE_URL})",
    )
    controller.add_argument(
        "--reduced",
        action="store_true",
        help="產生精簡蒐集模式的連結",
    )

    agent = subparsers.add_parser("agent", help="加入 session 並執行指令")
    agent.add_argument("locator", type=str, help="controller 提供的分享連結")
    source = agent.add_mutually_exclusive_group()
    source.add_argument("--camera", type=int, default=0, help="相機編號 (預設: 0)")
    source.add_argument("--image", type=Path, help="以圖片或圖片目錄作為影像來源")

    for sub in (controller, agent):
        sub.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            help="顯示詳細日誌",
        )

    return parser.parse_args(argv)


# ═══════════════════════════════════════════════════════════════════════════════
# Controller
# ═══════════════════════════════════════════════════════════════════════════════


class ControllerConsole:
    """controller 的互動式主控台"""

    def __init__(self, session: ControllerSession) -> None:
        self._session = session
        self._stall_reported = False

    async def handle_line(self, line: str) -> bool:
        """
        執行一行主控台指令

        Returns:
            是否繼續執行
        """
        command, _, argument = line.strip().partition(" ")
        command = command.lower()
        argument = argument.strip()
        session = self._session

        if not command:
            return True
        if command in ("quit", "exit"):
            return False

        if command == "cam":
            if argument.lower() == "off":
                await session.stop_camera()
            else:
                await session.activate_camera()
        elif command == "say" and argument:
            await session.speak(argument)
        elif command == "buzz":
            await session.vibrate()
        elif command == "glitch":
            await session.glitch()
        elif command == "audio" and argument:
            await session.play_audio(argument)
        elif command == "status":
            self.print_status()
        elif command == "clear":
            session.clear_payload()
            print("🧹 已清除遙測快照")
        else:
            print(CONSOLE_HELP)
        return True

    def print_status(self) -> None:
        session = self._session
        payload = session.last_payload
        print("=" * 60)
        print(f"Session: {session.session_id}")
        print(f"連結: {session.locator}")
        print(f"中繼: {'已連線' if session.is_connected else '未連線'}（連線次數 {session.relay.connection_count}）")
        if payload is None:
            print("遙測: 尚未收到")
        else:
            print(f"遙測: {payload.ip} / {payload.platform} / {payload.language} / {payload.timestamp}")
            if payload.ip_geo:
                print(f"  位置: {payload.ip_geo.city}, {payload.ip_geo.region}, {payload.ip_geo.country} ({payload.ip_geo.isp})")
            if payload.coords:
                print(f"  座標: {payload.coords.latitude}, {payload.coords.longitude} ±{payload.coords.accuracy}m")
            if payload.battery is not None:
                print(f"  電量: {payload.battery}%")
        print(f"相機: {'已要求' if session.camera_requested else '關閉'}{'（影像停滯）' if session.is_stream_stalled() else ''}")
        print(f"診斷: {session.relay.diagnostics.snapshot()}")
        print("=" * 60)

    async def watch_stream(self) -> None:
        """相機要求後長時間沒有影像時提示一次"""
        while True:
            await asyncio.sleep(STALL_CHECK_INTERVAL)
            stalled = self._session.is_stream_stalled()
            if stalled and not self._stall_reported:
                logger.warning("⚠️ 已要求相機但沒有收到影像，agent 可能沒有相機或已離線")
            self._stall_reported = stalled


def _frame_saver(frame_dir: Path):
    """建立把最新影像寫入 frame_dir 的 handler"""

    async def save_frame(frame: StreamFrame) -> None:
        data = decode_frame(frame.image)
        await asyncio.to_thread(_write_bytes, frame_dir / LATEST_FRAME_NAME, data)

    return save_frame


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def _print_telemetry(payload: TelemetryPayload) -> None:
    print(f"\n📡 收到遙測: {payload.ip} ({payload.platform}, {payload.user_agent})")


async def run_controller(args: argparse.Namespace, config: RelayConfig) -> int:
    session = ControllerSession(
        config,
        base_url=args.base_url,
        reduced=args.reduced,
        on_telemetry=_print_telemetry,
        on_frame=_frame_saver(config.frame_dir),
    )
    console = ControllerConsole(session)

    logger.info("=" * 60)
    logger.info("🛰️ Controller 啟動中...")
    logger.info(f"   Broker: {config.broker_url}")
    logger.info(f"   Session: {session.session_id}")
    logger.info(f"   影像目錄: {config.frame_dir}")
    logger.info("=" * 60)
    print(f"\n🔗 分享連結:\n{session.locator}\n")
    print(CONSOLE_HELP)

    await session.start()
    watcher = asyncio.create_task(console.watch_stream(), name="stream-watcher")
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not await console.handle_line(line):
                break
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        await session.close()
    return 0


# ═══════════════════════════════════════════════════════════════════════════════
# Agent
# ═══════════════════════════════════════════════════════════════════════════════


def _build_media_source(args: argparse.Namespace) -> MediaSource:
    if args.image is not None:
        return ImageFileSource(args.image)
    return OpenCVCameraSource(args.camera)


async def run_agent(args: argparse.Namespace, config: RelayConfig) -> int:
    try:
        session = AgentSession(args.locator, config, media_source=_build_media_source(args))
    except LocatorError as e:
        logger.error(f"❌ 分享連結無效: {e}")
        return 2

    logger.info("=" * 60)
    logger.info("🤖 Agent 啟動中...")
    logger.info(f"   Broker: {config.broker_url}")
    logger.info(f"   Session: {session.session_id}")
    logger.info(f"   精簡模式: {session.locator.reduced}")
    logger.info("=" * 60)

    await session.start()
    try:
        await asyncio.Event().wait()
    finally:
        await session.close()
    return 0


async def run(args: argparse.Namespace) -> int:
    config = RelayConfig.from_env()
    if args.role == "controller":
        return await run_controller(args, config)
    return await run_agent(args, config)


def main(argv: list[str] | None = None) -> int:
    """主函式"""
    args = parse_args(argv)
    setup_logging(
        log_file=f"session_relay_{args.role}.log",
        console_log_level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("👋 收到中斷訊號，已停止")
        return 0


if __name__ == "__main__":
    sys.exit(main())
