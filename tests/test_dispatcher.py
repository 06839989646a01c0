"""Tests for command dispatch and agent capabilities."""

import pytest

from session_relay.base.data_structures import CameraState, CommandType
from session_relay.capabilities import CameraCapability, CommandRegistry, EffectCapabilities, LoggingEffects
from session_relay.dispatcher import CommandDispatcher, build_agent_registry, make_command
from session_relay.schemas import CommandMessage
from session_relay.streaming import StreamingLoop
from tests.mocks import FakeSource


async def _publish_nothing(frame):
    return True


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def effects():
    return LoggingEffects()


@pytest.fixture
def agent(source, effects, diagnostics):
    """Dispatcher wired the way AgentSession wires it."""
    loop = StreamingLoop(source, _publish_nothing, fps=50.0, diagnostics=diagnostics)
    camera = CameraCapability(loop, diagnostics)
    dispatcher = CommandDispatcher(build_agent_registry(camera, EffectCapabilities(effects)), diagnostics)
    return dispatcher, camera, loop


class TestCommandRegistry:
    """Test handler registration."""

    def test_register_decorator(self):
        registry = CommandRegistry()

        @registry.register(CommandType.SPEAK, description="say something")
        async def handle(command):
            pass

        assert CommandType.SPEAK in registry
        assert "SPEAK" in registry
        assert registry.get("SPEAK").handler is handle
        assert registry.get(CommandType.SPEAK).description == "say something"
        assert registry.list_types() == ["SPEAK"]
        assert 42 not in registry

    def test_agent_registry_covers_all_types(self, agent):
        dispatcher, _, _ = agent

        assert sorted(dispatcher.registry.list_types()) == sorted(t.value for t in CommandType)


class TestMakeCommand:
    """Test controller-side command encoding."""

    def test_enum_type(self):
        command = make_command(CommandType.VIBRATE, {"pattern": [100]})

        assert command.type == "VIBRATE"
        assert command.payload == {"pattern": [100]}
        assert command.timestamp

    def test_string_type(self):
        assert make_command("CUSTOM").type == "CUSTOM"


class TestCameraStateMachine:
    """Test the IDLE/ACTIVE camera capability."""

    @pytest.mark.asyncio
    async def test_on_on_off_off(self, agent, source):
        dispatcher, camera, loop = agent

        for command_type in ("ACTIVATE_CAMERA", "ACTIVATE_CAMERA", "STOP_CAMERA", "STOP_CAMERA"):
            assert await dispatcher.dispatch(make_command(command_type)) is True

        assert source.acquired == 1
        assert source.released == 1
        assert camera.state is CameraState.IDLE
        assert not loop.is_running

    @pytest.mark.asyncio
    async def test_activate_starts_stream(self, agent, source):
        dispatcher, camera, loop = agent

        await dispatcher.dispatch(make_command(CommandType.ACTIVATE_CAMERA))

        assert camera.state is CameraState.ACTIVE
        assert loop.is_running
        await camera.deactivate()

    @pytest.mark.asyncio
    async def test_transition_results(self, agent):
        _, camera, _ = agent

        assert await camera.activate() is True
        assert await camera.activate() is False
        assert await camera.deactivate() is True
        assert await camera.deactivate() is False

    @pytest.mark.asyncio
    async def test_acquisition_failure(self, diagnostics):
        source = FakeSource(fail=True)
        loop = StreamingLoop(source, _publish_nothing, diagnostics=diagnostics)
        camera = CameraCapability(loop, diagnostics)

        assert await camera.activate() is False

        assert camera.state is CameraState.IDLE
        assert not loop.is_running
        assert len(diagnostics.events_named("camera_unavailable")) == 1
        assert diagnostics.capability_errors == 1

    @pytest.mark.asyncio
    async def test_device_error_recorded(self, diagnostics):
        source = FakeSource(error=OSError("device busy"))
        camera = CameraCapability(StreamingLoop(source, _publish_nothing), diagnostics)

        assert await camera.activate() is False

        assert camera.state is CameraState.IDLE
        events = diagnostics.events_named("camera_unavailable")
        assert len(events) == 1
        assert "device busy" in events[0].detail
        assert diagnostics.capability_errors == 1

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self, diagnostics):
        source = FakeSource(fail=True)
        camera = CameraCapability(StreamingLoop(source, _publish_nothing), diagnostics)

        await camera.activate()
        source.fail = False
        assert camera.state is CameraState.IDLE
        assert source.acquired == 0

        assert await camera.activate() is True
        assert source.acquired == 1
        await camera.deactivate()


class TestOneShotEffects:
    """Test SPEAK, VIBRATE, PLAY_AUDIO and GLITCH."""

    @pytest.mark.asyncio
    async def test_duplicates_repeat(self, agent, effects, diagnostics):
        dispatcher, _, _ = agent

        await dispatcher.dispatch(make_command(CommandType.SPEAK, {"text": "hi"}))
        await dispatcher.dispatch(make_command(CommandType.SPEAK, {"text": "hi"}))

        assert effects.history == [("speak", {"text": "hi", "lang": None}), ("speak", {"text": "hi", "lang": None})]
        assert diagnostics.handled == 2

    @pytest.mark.asyncio
    async def test_defaults(self, agent, effects):
        dispatcher, _, _ = agent

        await dispatcher.dispatch(make_command(CommandType.VIBRATE))
        await dispatcher.dispatch(make_command(CommandType.GLITCH))

        assert effects.history == [
            ("vibrate", {"pattern": [200, 100, 200]}),
            ("glitch", {"duration_ms": 3000}),
        ]

    @pytest.mark.asyncio
    async def test_payload_values(self, agent, effects):
        dispatcher, _, _ = agent

        await dispatcher.dispatch(make_command(CommandType.SPEAK, {"text": "olá", "lang": "pt-BR"}))
        await dispatcher.dispatch(make_command(CommandType.PLAY_AUDIO, {"url": "https://example.com/a.mp3"}))
        await dispatcher.dispatch(make_command(CommandType.GLITCH, {"duration_ms": 500}))

        assert effects.history == [
            ("speak", {"text": "olá", "lang": "pt-BR"}),
            ("play_audio", {"url": "https://example.com/a.mp3"}),
            ("glitch", {"duration_ms": 500}),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "command_type,payload",
        [
            (CommandType.SPEAK, None),
            (CommandType.SPEAK, {"text": "  "}),
            (CommandType.PLAY_AUDIO, {}),
            (CommandType.VIBRATE, {"pattern": "long"}),
            (CommandType.GLITCH, {"duration_ms": -1}),
        ],
    )
    async def test_invalid_payload_rejected(self, agent, effects, diagnostics, command_type, payload):
        dispatcher, _, _ = agent

        assert await dispatcher.dispatch(make_command(command_type, payload)) is False

        assert effects.history == []
        assert diagnostics.capability_errors == 1
        assert diagnostics.handled == 0


class TestUnknownCommands:
    """Test tolerance of command types this agent does not know."""

    @pytest.mark.asyncio
    async def test_unknown_ignored(self, agent, effects, source, diagnostics):
        dispatcher, camera, _ = agent

        result = await dispatcher.dispatch(CommandMessage(type="SELF_DESTRUCT", timestamp="t"))

        assert result is False
        assert diagnostics.ignored == 1
        assert diagnostics.capability_errors == 0
        assert camera.state is CameraState.IDLE
        assert source.acquired == 0
        assert effects.history == []

    @pytest.mark.asyncio
    async def test_handler_crash_is_contained(self, diagnostics):
        registry = CommandRegistry()

        @registry.register("EXPLODE")
        async def explode(command):
            raise RuntimeError("boom")

        dispatcher = CommandDispatcher(registry, diagnostics)

        assert await dispatcher.dispatch(make_command("EXPLODE")) is False
        assert diagnostics.capability_errors == 1
