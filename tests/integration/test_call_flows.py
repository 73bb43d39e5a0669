"""시그널링 루프백 통합 테스트

여러 클라이언트(매니저 + 디스패처)를 가짜 시그널링 서버로 연결해
1:1 통화와 풀메시 컨퍼런스의 전체 메시지 흐름을 검증한다.
피어 연결 상태(connected 등)는 테스트가 직접 발생시킨다.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from callcore.core.webrtc_config import EndReason
from callcore.handlers.signaling_dispatcher import SignalingDispatcher
from callcore.schemas.session import CallState, ConferenceState, MediaKind
from callcore.schemas.signaling import ConferenceInfo, SignalingMessage
from callcore.services.call_session_manager import CallSessionManager
from callcore.services.conference_room_client import ConferenceRoomClient
from callcore.services.conference_session_manager import ConferenceSessionManager
from callcore.services.listeners import CallSessionListener, ConferenceSessionListener
from callcore.services.media_keys import MediaKeyRing
from callcore.services.signaling import SignalingCodec, SignalingSender
from fakes import FakeMediaAcquisition, FakePeerConnection, FakeScheduler, LoopbackNetwork


class Client:
    """한 사용자의 통화 스택 (매니저 2개 + 디스패처)"""

    def __init__(self, network: LoopbackNetwork, identity: str, settings):
        self.identity = identity
        self.network = network
        self.codec = SignalingCodec()
        self.scheduler = FakeScheduler()
        self.connections: list[FakePeerConnection] = []
        self.call_listener = MagicMock(spec=CallSessionListener)
        self.conference_listener = MagicMock(spec=ConferenceSessionListener)

        self.room_client = AsyncMock(spec=ConferenceRoomClient)
        self.room_client.create_conference.return_value = ConferenceInfo(conf_id="conf-1", room_id="room-1")
        self.room_client.join_conference.return_value = ConferenceInfo(conf_id="conf-1", room_id="room-1")

        sender = SignalingSender(network.channel(identity), self.codec, identity)
        self.call = CallSessionManager(
            sender,
            FakeMediaAcquisition(),
            self._connect,
            scheduler=self.scheduler,
            listener=self.call_listener,
            settings=settings,
        )
        self.conference = ConferenceSessionManager(
            sender,
            FakeMediaAcquisition(),
            self._connect,
            self.room_client,
            scheduler=self.scheduler,
            listener=self.conference_listener,
            settings=settings,
            key_provider_factory=MediaKeyRing,
        )
        self.dispatcher = SignalingDispatcher(self.codec, self.call, self.conference)
        network.dispatchers[identity] = self.dispatcher

    async def _connect(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.connections.append(pc)
        return pc

    async def receive_peers(self, *peer_ids: str) -> None:
        """서버가 보내는 CONF_PEERS 주입"""
        message = SignalingMessage(
            type="CONF_PEERS",
            sender="system",
            extra={"confId": "conf-1", "peers": ",".join(peer_ids), "target": self.identity},
        )
        await self.dispatcher.dispatch(self.codec.encode(message))

    async def connect_all(self) -> None:
        for pc in self.connections:
            if not pc.closed and pc.connectionState != "connected":
                await pc.set_state("connected")


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest.fixture
def alice(network, settings) -> Client:
    return Client(network, "alice", settings)


@pytest.fixture
def bob(network, settings) -> Client:
    return Client(network, "bob", settings)


@pytest.fixture
def carol(network, settings) -> Client:
    return Client(network, "carol", settings)


# ===== 1:1 통화 =====


@pytest.mark.asyncio
async def test_call_answered_and_hung_up(network, alice, bob):
    """A→B 발신, B 수락, 양쪽 active, A 종료 → 양쪽 idle"""
    # Given: A가 B에게 비디오 발신
    await alice.call.start_call("bob", MediaKind.VIDEO)
    await network.flush()
    assert bob.call.state == CallState.INCOMING
    bob.call_listener.on_incoming_call.assert_called_once_with("alice", "video")

    # When: B 수락
    await bob.call.accept_call()
    await network.flush()

    # Then: 양쪽 연결 진행 후 active
    assert alice.call.state == CallState.CONNECTING
    assert bob.call.state == CallState.CONNECTING
    await alice.connect_all()
    await bob.connect_all()
    assert alice.call.state == CallState.ACTIVE
    assert bob.call.state == CallState.ACTIVE

    # When: A 종료
    await alice.call.end_call()
    await network.flush()

    # Then
    assert alice.call.state == CallState.IDLE
    assert bob.call.state == CallState.IDLE
    bob.call_listener.on_call_ended.assert_called_once_with(EndReason.HANGUP)


@pytest.mark.asyncio
async def test_unanswered_call_times_out_on_both_sides(network, alice, bob):
    """B가 30초 동안 응답하지 않으면 B가 CALL_END{timeout}을 보내고 양쪽 idle"""
    await alice.call.start_call("bob")
    await network.flush()

    await bob.scheduler.advance(30)
    await network.flush()

    assert bob.call.state == CallState.IDLE
    assert alice.call.state == CallState.IDLE
    assert network.sent_by("bob", "CALL_END")[0]["extra"]["reason"] == "timeout"
    alice.call_listener.on_call_ended.assert_called_once_with(EndReason.TIMEOUT)


@pytest.mark.asyncio
async def test_rejected_call(network, alice, bob):
    await alice.call.start_call("bob")
    await network.flush()

    await bob.call.reject_call()
    await network.flush()

    assert alice.call.state == CallState.IDLE
    alice.call_listener.on_call_ended.assert_called_once_with(EndReason.REJECTED)


@pytest.mark.asyncio
async def test_second_caller_gets_busy(network, alice, bob, carol):
    """B가 A의 전화를 받는 중이면 C는 CALL_BUSY를 받고 idle"""
    await alice.call.start_call("bob")
    await network.flush()

    await carol.call.start_call("bob")
    await network.flush()

    assert carol.call.state == CallState.IDLE
    carol.call_listener.on_call_ended.assert_called_once_with(EndReason.BUSY)
    assert bob.call.state == CallState.INCOMING
    assert bob.call.peer_id == "alice"
    assert alice.call.state == CallState.OUTGOING


@pytest.mark.asyncio
async def test_video_upgrade_during_call(network, alice, bob):
    """음성 통화 중 비디오 추가: 재협상 후 양쪽 active 유지"""
    await alice.call.start_call("bob")
    await network.flush()
    await bob.call.accept_call()
    await network.flush()
    await alice.connect_all()
    await bob.connect_all()

    await alice.call.add_video()
    await network.flush()

    assert alice.call.state == CallState.ACTIVE
    assert bob.call.state == CallState.ACTIVE
    assert network.sent_by("bob", "CALL_ANSWER")[-1]["extra"]["renegotiate"] is True
    assert len(alice.connections[0].remote_descriptions) == 2
    assert bob.call.session.media_kind == MediaKind.VIDEO


# ===== 풀메시 컨퍼런스 =====


async def _three_party_conference(network, alice, bob, carol):
    """A 생성 → B 참여 → C 참여 후 모든 연결 connected"""
    await alice.conference.create_conference()
    await network.flush()

    await bob.conference.join_conference("conf-1")
    await network.flush()
    await bob.receive_peers("alice")
    await network.flush()

    await carol.conference.join_conference("conf-1")
    await network.flush()
    await carol.receive_peers("alice", "bob")
    await network.flush()

    for client in (alice, bob, carol):
        await client.connect_all()


@pytest.mark.asyncio
async def test_three_party_mesh(network, alice, bob, carol):
    """새 참가자만 offer하고, 모두가 서로 한 개씩 연결"""
    await _three_party_conference(network, alice, bob, carol)

    # A는 먼저 offer하지 않음
    assert network.sent_by("alice", "CONF_OFFER") == []
    assert [m["extra"]["target"] for m in network.sent_by("bob", "CONF_OFFER")] == ["alice"]
    assert [m["extra"]["target"] for m in network.sent_by("carol", "CONF_OFFER")] == ["alice", "bob"]

    for client, others in ((alice, {"bob", "carol"}), (bob, {"alice", "carol"}), (carol, {"alice", "bob"})):
        assert client.conference.state == ConferenceState.ACTIVE
        assert set(client.conference.peers.peer_ids) == others
        assert set(client.conference.participants) == others | {client.identity}
        assert len(client.connections) == 2

    # 미디어 키 교환
    assert alice.conference.keys.peer_key("carol") == carol.conference.keys.current_key()
    assert carol.conference.keys.peer_key("alice") == alice.conference.keys.current_key()


@pytest.mark.asyncio
async def test_leave_keeps_remaining_peers_connected(network, alice, bob, carol):
    """B가 나가면 A와 C는 B만 정리하고 서로 연결 유지, 키 교체"""
    await _three_party_conference(network, alice, bob, carol)

    await bob.conference.leave_conference()
    await network.flush()

    assert bob.conference.state == ConferenceState.IDLE
    for client, other in ((alice, "carol"), (carol, "alice")):
        assert client.conference.state == ConferenceState.ACTIVE
        assert client.conference.peers.peer_ids == [other]
        assert "bob" not in client.conference.participants
        client.conference_listener.on_peer_removed.assert_called_once_with("bob")

    # 양쪽이 교체한 키를 서로 받음
    assert alice.conference.keys.peer_key("carol") == carol.conference.keys.current_key()
    assert carol.conference.keys.peer_key("alice") == alice.conference.keys.current_key()


@pytest.mark.asyncio
async def test_two_party_conference_survives_peer_leave(network, alice, bob):
    await alice.conference.create_conference()
    await network.flush()
    await bob.conference.join_conference("conf-1")
    await network.flush()
    await bob.receive_peers("alice")
    await network.flush()

    await bob.conference.leave_conference()
    await network.flush()

    assert alice.conference.state == ConferenceState.ACTIVE
    assert alice.conference.participants == ["alice"]
    assert len(alice.conference.peers) == 0
