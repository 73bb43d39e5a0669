"""pytest 설정 및 공유 fixture

테스트 인프라:
- 테스트 설정 (.env 무시)
- 가짜 채널 / 스케줄러 / 미디어 / 피어 연결 팩토리
- 리스너 mock
"""

from unittest.mock import MagicMock

import pytest

from callcore.core.config import Settings
from callcore.services.listeners import CallSessionListener, ConferenceSessionListener
from callcore.services.signaling import SignalingCodec, SignalingSender
from fakes import FakeChannel, FakeMediaAcquisition, FakePeerConnection, FakeScheduler


# ===== Fixtures =====


@pytest.fixture
def settings() -> Settings:
    """테스트용 설정 (.env 무시)"""
    return Settings(
        _env_file=None,
        api_base_url="http://testserver",
        api_token="test-token",
        incoming_call_timeout=30.0,
        outgoing_call_timeout=45.0,
        max_participants=10,
    )


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def codec() -> SignalingCodec:
    return SignalingCodec()


@pytest.fixture
def sender(channel: FakeChannel, codec: SignalingCodec) -> SignalingSender:
    return SignalingSender(channel, codec, "alice")


@pytest.fixture
def media() -> FakeMediaAcquisition:
    return FakeMediaAcquisition()


@pytest.fixture
def connections() -> list[FakePeerConnection]:
    """생성된 가짜 연결 목록 (생성 순서)"""
    return []


@pytest.fixture
def connection_factory(connections: list[FakePeerConnection]):
    async def factory() -> FakePeerConnection:
        pc = FakePeerConnection()
        connections.append(pc)
        return pc

    return factory


@pytest.fixture
def call_listener() -> MagicMock:
    return MagicMock(spec=CallSessionListener)


@pytest.fixture
def conference_listener() -> MagicMock:
    return MagicMock(spec=ConferenceSessionListener)
