import pytest

from relay.config import WebRtcTransportConfig
from relay.session import SignalingCoordinator

from fakes import FakeRouter, RecordingChannel


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def transport_config() -> WebRtcTransportConfig:
    return WebRtcTransportConfig(
        LISTEN_IP="127.0.0.1",
        ANNOUNCED_IP="203.0.113.10",
        MAX_INCOMING_BITRATE=1500000,
        INITIAL_AVAILABLE_OUTGOING_BITRATE=1000000,
    )


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def coordinator(router: FakeRouter, transport_config: WebRtcTransportConfig) -> SignalingCoordinator:
    return SignalingCoordinator(router, transport_config=transport_config)


@pytest.fixture
def make_channel():
    counter = {"n": 0}

    def factory() -> RecordingChannel:
        counter["n"] += 1
        return RecordingChannel(f"channel-{counter['n']:04d}")

    return factory
