"""ConferenceSessionManager 단위 테스트

테스트 범위:
- 룸 생성/참여, 정원 초과(서버 409, CONF_PEERS 명단)
- 새 참가자만 기존 참가자에게 offer
- CONF_LEAVE는 해당 피어만 정리, 2인 방에서 상대가 나가도 세션 유지
- 퇴장 시 미디어 키 교체
- 피어 하나의 협상 실패는 다른 피어에 영향 없음
"""

import json
from unittest.mock import AsyncMock

import pytest

from callcore.core.exceptions import (
    InvalidStateError,
    NegotiationError,
    PeerUnreachable,
    RoomFull,
    SessionAborted,
    SignalingUnavailable,
)
from callcore.core.webrtc_config import EndReason
from callcore.schemas.session import ConferenceState, MediaKind
from callcore.schemas.signaling import ConferenceInfo
from callcore.services.conference_room_client import ConferenceRoomClient
from callcore.services.conference_session_manager import ConferenceSessionManager
from callcore.services.media_keys import MediaKeyRing
from fakes import answer_json, candidate_json, make_message, offer_json


@pytest.fixture
def room_client() -> AsyncMock:
    client = AsyncMock(spec=ConferenceRoomClient)
    client.create_conference.return_value = ConferenceInfo(
        conf_id="conf-1", room_id="room-1", participants=["alice"], count=1
    )
    client.join_conference.return_value = ConferenceInfo(
        conf_id="conf-1", room_id="room-1", participants=["bob", "alice"], count=2
    )
    client.leave_conference.return_value = None
    return client


@pytest.fixture
def manager(sender, media, connection_factory, room_client, scheduler, conference_listener, settings):
    return ConferenceSessionManager(
        sender,
        media,
        connection_factory,
        room_client,
        scheduler=scheduler,
        listener=conference_listener,
        settings=settings,
        key_provider_factory=MediaKeyRing,
    )


def _peers(*peer_ids, conf_id="conf-1"):
    return make_message("CONF_PEERS", "system", confId=conf_id, peers=",".join(peer_ids))


async def _join_with(manager, *peer_ids):
    """alice가 conf-1에 참여하고 서버가 기존 참가자 명단을 보냄"""
    await manager.join_conference("conf-1")
    await manager.handle_peers(_peers(*peer_ids))


# ===== 생성 / 참여 =====


class TestCreateAndJoin:
    @pytest.mark.asyncio
    async def test_create_conference_broadcasts_join(self, manager, room_client, channel, conference_listener):
        """룸 생성 후 CONF_JOIN 브로드캐스트, 혼자여도 active"""
        # When
        conf_id = await manager.create_conference(MediaKind.VIDEO, room_id="room-1")

        # Then
        assert conf_id == "conf-1"
        room_client.create_conference.assert_awaited_once_with("room-1")
        assert manager.state == ConferenceState.ACTIVE
        assert manager.participants == ["alice"]
        assert manager.media_kind == MediaKind.VIDEO

        join = channel.of_type("CONF_JOIN")[0]
        assert join["extra"] == {"confId": "conf-1"}
        assert join["roomId"] == "room-1"

        states = [c.args[0] for c in conference_listener.on_state_changed.call_args_list]
        assert states == [ConferenceState.JOINING, ConferenceState.ACTIVE]

    @pytest.mark.asyncio
    async def test_join_conference(self, manager, room_client, channel, connections):
        await manager.join_conference("conf-1")

        room_client.join_conference.assert_awaited_once_with("conf-1")
        assert manager.conference_id == "conf-1"
        assert manager.session.room_id == "room-1"
        assert manager.state == ConferenceState.ACTIVE
        # CONF_PEERS를 받기 전까지는 연결 없음
        assert connections == []
        assert channel.of_type("CONF_OFFER") == []

    @pytest.mark.asyncio
    async def test_join_full_room_raises_room_full(self, manager, room_client, media, channel):
        """서버가 정원 초과로 거절하면 RoomFull, idle 복귀, 미디어 해제"""
        room_client.join_conference.side_effect = RoomFull("Conference conf-1 is full")

        with pytest.raises(RoomFull):
            await manager.join_conference("conf-1")

        assert manager.state == ConferenceState.IDLE
        assert channel.of_type("CONF_JOIN") == []
        assert all(t.readyState == "ended" for t in media.streams[0].tracks)
        assert manager.keys is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["create", "join"])
    async def test_cleanup_during_registration_leaves_room(self, manager, room_client, channel, mode):
        """서버 등록 도중 cleanup되면 서버 명단에서 빠지고 SessionAborted"""

        # Given: REST 응답 전에 세션이 정리됨
        async def register_then_cleanup(*args):
            await manager.cleanup()
            return ConferenceInfo(conf_id="conf-1", room_id="room-1")

        room_client.create_conference.side_effect = register_then_cleanup
        room_client.join_conference.side_effect = register_then_cleanup

        # When
        with pytest.raises(SessionAborted):
            if mode == "create":
                await manager.create_conference()
            else:
                await manager.join_conference("conf-1")

        # Then
        room_client.leave_conference.assert_awaited_once_with("conf-1")
        assert manager.state == ConferenceState.IDLE
        assert channel.of_type("CONF_JOIN") == []

    @pytest.mark.asyncio
    async def test_join_while_active_raises(self, manager):
        await manager.create_conference()

        with pytest.raises(InvalidStateError):
            await manager.join_conference("conf-2")

    @pytest.mark.asyncio
    async def test_closed_channel_aborts_join(self, manager, channel, room_client):
        """CONF_JOIN을 보낼 수 없으면 룸에서 나가고 SignalingUnavailable"""
        channel.is_open = False

        with pytest.raises(SignalingUnavailable):
            await manager.join_conference("conf-1")

        room_client.leave_conference.assert_awaited_once_with("conf-1")
        assert manager.state == ConferenceState.IDLE


# ===== 풀메시 협상 =====


class TestMeshNegotiation:
    @pytest.mark.asyncio
    async def test_newcomer_offers_to_every_existing_peer(self, manager, channel, connections):
        """CONF_PEERS 명단의 기존 참가자 각각에게 CONF_OFFER"""
        await _join_with(manager, "bob", "carol")

        offers = channel.of_type("CONF_OFFER")
        assert [o["extra"]["target"] for o in offers] == ["bob", "carol"]
        for offer in offers:
            assert offer["extra"]["confId"] == "conf-1"
            assert offer["extra"]["callType"] == "audio"
            assert offer["extra"]["mediaKey"] == manager.keys.current_key()
            assert json.loads(offer["extra"]["sdp"])["type"] == "offer"

        assert len(connections) == 2
        # 로컬 트랙은 피어마다 별도 relay 트랙
        assert len(connections[0].tracks) == 1
        assert connections[0].tracks[0] is not connections[1].tracks[0]
        assert manager.participants == ["alice", "bob", "carol"]

    @pytest.mark.asyncio
    async def test_peers_roster_excludes_self(self, manager, channel):
        await _join_with(manager, "bob", "alice")

        assert [o["extra"]["target"] for o in channel.of_type("CONF_OFFER")] == ["bob"]

    @pytest.mark.asyncio
    async def test_existing_participant_waits_for_offer(self, manager, channel, connections):
        """기존 참가자는 CONF_JOIN을 받아도 먼저 offer하지 않음"""
        await manager.create_conference()

        await manager.handle_join(make_message("CONF_JOIN", "carol", confId="conf-1"))

        assert manager.participants == ["alice", "carol"]
        assert channel.of_type("CONF_OFFER") == []
        assert connections == []

    @pytest.mark.asyncio
    async def test_offer_answered_with_media_key(self, manager, channel, connections):
        await manager.create_conference()
        carol_key = "Ym9iLWtleQ=="

        await manager.handle_join(make_message("CONF_JOIN", "carol", confId="conf-1"))
        await manager.handle_ice(make_message("CONF_ICE", "carol", confId="conf-1", candidate=candidate_json(5001)))
        await manager.handle_offer(
            make_message("CONF_OFFER", "carol", confId="conf-1", sdp=offer_json(), mediaKey=carol_key)
        )

        answer = channel.of_type("CONF_ANSWER")[0]
        assert answer["extra"]["target"] == "carol"
        assert answer["extra"]["confId"] == "conf-1"
        assert answer["extra"]["mediaKey"] == manager.keys.current_key()
        assert "renegotiate" not in answer["extra"]
        assert manager.keys.peer_key("carol") == carol_key
        assert manager.participants == ["alice", "carol"]
        # 선도착 candidate는 offer 적용 후 추가
        assert [c.port for c in connections[0].added_candidates] == [5001]

    @pytest.mark.asyncio
    async def test_answer_applied(self, manager, connections):
        await _join_with(manager, "bob")

        await manager.handle_answer(
            make_message("CONF_ANSWER", "bob", confId="conf-1", sdp=answer_json(), mediaKey="a2V5")
        )

        assert connections[0].remoteDescription.type == "answer"
        assert manager.keys.peer_key("bob") == "a2V5"

    @pytest.mark.asyncio
    async def test_other_conference_messages_ignored(self, manager, channel):
        await manager.create_conference()

        await manager.handle_offer(make_message("CONF_OFFER", "carol", confId="conf-2", sdp=offer_json()))

        assert channel.of_type("CONF_ANSWER") == []

    @pytest.mark.asyncio
    async def test_messages_ignored_while_idle(self, manager, channel, connections):
        await manager.handle_offer(make_message("CONF_OFFER", "carol", confId="conf-1", sdp=offer_json()))
        await manager.handle_peers(_peers("bob"))

        assert channel.frames == []
        assert connections == []


# ===== 정원 =====


class TestRoomCapacity:
    @pytest.mark.asyncio
    async def test_roster_over_capacity_aborts(self, manager, settings, channel, room_client, conference_listener):
        """기존 참가자 + 자신이 정원을 넘으면 CONF_LEAVE{full} 후 idle"""
        settings.max_participants = 3
        await manager.join_conference("conf-1")

        await manager.handle_peers(_peers("bob", "carol", "dave"))

        assert manager.state == ConferenceState.IDLE
        assert channel.of_type("CONF_OFFER") == []
        leave = channel.of_type("CONF_LEAVE")[0]
        assert leave["extra"] == {"confId": "conf-1", "reason": "full"}
        room_client.leave_conference.assert_awaited_once_with("conf-1")
        assert isinstance(conference_listener.on_error.call_args.args[0], RoomFull)
        conference_listener.on_call_ended.assert_called_once_with(EndReason.ROOM_FULL)

    @pytest.mark.asyncio
    async def test_roster_at_capacity_accepted(self, manager, settings, channel):
        settings.max_participants = 3
        await _join_with(manager, "bob", "carol")

        assert manager.state == ConferenceState.ACTIVE
        assert len(channel.of_type("CONF_OFFER")) == 2

    @pytest.mark.asyncio
    async def test_system_full_leave_aborts(self, manager, conference_listener):
        await manager.join_conference("conf-1")

        await manager.handle_leave(make_message("CONF_LEAVE", "system", confId="conf-1", reason="full"))

        assert manager.state == ConferenceState.IDLE
        assert isinstance(conference_listener.on_error.call_args.args[0], RoomFull)


# ===== 퇴장 =====


class TestLeave:
    @pytest.mark.asyncio
    async def test_peer_leave_keeps_session_active(self, manager, connections, conference_listener):
        """2인 방에서 상대가 나가도 세션은 active로 유지"""
        await _join_with(manager, "bob")

        await manager.handle_leave(make_message("CONF_LEAVE", "bob", confId="conf-1"))

        assert manager.state == ConferenceState.ACTIVE
        assert manager.participants == ["alice"]
        assert len(manager.peers) == 0
        assert connections[0].closed is True
        conference_listener.on_peer_removed.assert_called_once_with("bob")

    @pytest.mark.asyncio
    async def test_leave_rotates_media_key_for_remaining_peers(self, manager, channel):
        await _join_with(manager, "bob", "carol")
        old_key = manager.keys.current_key()

        await manager.handle_leave(make_message("CONF_LEAVE", "bob", confId="conf-1"))

        rotations = channel.of_type("CONF_ICE")
        assert [r["extra"]["target"] for r in rotations] == ["carol"]
        assert rotations[0]["extra"]["keyRotation"] is True
        assert rotations[0]["extra"]["mediaKey"] == manager.keys.current_key()
        assert manager.keys.current_key() != old_key

    @pytest.mark.asyncio
    async def test_late_candidate_from_departed_peer_dropped(self, manager, channel):
        """퇴장한 피어의 늦은 candidate로 엔트리가 되살아나지 않음"""
        # Given: bob 퇴장
        await _join_with(manager, "bob", "carol")
        await manager.handle_leave(make_message("CONF_LEAVE", "bob", confId="conf-1"))

        # When: bob의 candidate가 뒤늦게 도착
        await manager.handle_ice(make_message("CONF_ICE", "bob", confId="conf-1", candidate=candidate_json(5002)))

        # Then
        assert "bob" not in manager.peers

        # carol까지 나가면 키 교체 대상이 없음
        await manager.handle_leave(make_message("CONF_LEAVE", "carol", confId="conf-1"))
        targets = [r["extra"]["target"] for r in channel.of_type("CONF_ICE")]
        assert "bob" not in targets
        assert len(manager.peers) == 0

    @pytest.mark.asyncio
    async def test_key_rotation_message_updates_peer_key(self, manager, connections):
        await _join_with(manager, "bob")

        await manager.handle_ice(
            make_message("CONF_ICE", "bob", confId="conf-1", keyRotation=True, mediaKey="bmV3")
        )

        assert manager.keys.peer_key("bob") == "bmV3"
        assert connections[0].added_candidates == []

    @pytest.mark.asyncio
    async def test_leave_conference(self, manager, channel, room_client, connections, conference_listener):
        await _join_with(manager, "bob", "carol")

        await manager.leave_conference()

        assert manager.state == ConferenceState.IDLE
        assert channel.of_type("CONF_LEAVE")[0]["extra"] == {"confId": "conf-1"}
        room_client.leave_conference.assert_awaited_once_with("conf-1")
        assert all(pc.closed for pc in connections)
        assert manager.participants == []
        assert manager.keys is None
        conference_listener.on_call_ended.assert_called_once_with(EndReason.LEFT)

    @pytest.mark.asyncio
    async def test_leave_conference_when_socket_broken(self, manager, channel, room_client, connections):
        await _join_with(manager, "bob")
        channel.fail_with = RuntimeError("WebSocket is not connected")

        await manager.leave_conference()

        assert manager.state == ConferenceState.IDLE
        room_client.leave_conference.assert_awaited_once_with("conf-1")
        assert all(pc.closed for pc in connections)

    @pytest.mark.asyncio
    async def test_leave_when_idle_is_noop(self, manager, channel, room_client):
        await manager.leave_conference()

        assert channel.frames == []
        room_client.leave_conference.assert_not_awaited()


# ===== 피어별 실패 격리 / 타이머 =====


class TestPeerIsolation:
    @pytest.mark.asyncio
    async def test_bad_answer_removes_only_that_peer(self, manager, connections, conference_listener):
        await _join_with(manager, "bob", "carol")

        await manager.handle_answer(make_message("CONF_ANSWER", "bob", confId="conf-1", sdp=offer_json()))

        assert "bob" not in manager.peers
        assert "carol" in manager.peers
        assert manager.participants == ["alice", "carol"]
        assert manager.state == ConferenceState.ACTIVE
        assert isinstance(conference_listener.on_error.call_args.args[0], NegotiationError)

    @pytest.mark.asyncio
    async def test_failed_connection_removes_only_that_peer(self, manager, connections, conference_listener):
        await _join_with(manager, "bob", "carol")

        await connections[0].set_state("failed")

        assert manager.peers.peer_ids == ["carol"]
        assert manager.state == ConferenceState.ACTIVE
        error = conference_listener.on_error.call_args.args[0]
        assert isinstance(error, PeerUnreachable)
        assert error.peer_id == "bob"

    @pytest.mark.asyncio
    async def test_duration_starts_on_first_connection(self, manager, connections, scheduler, conference_listener):
        await _join_with(manager, "bob", "carol")
        assert scheduler.pending == []

        await connections[0].set_state("connected")
        await connections[1].set_state("connected")
        await scheduler.advance(2)

        assert [c.args[0] for c in conference_listener.on_duration.call_args_list] == [1, 2]
        assert manager.duration == 2

    @pytest.mark.asyncio
    async def test_remote_track_reported_per_peer(self, manager, connections, conference_listener):
        await _join_with(manager, "bob")

        class Track:
            kind = "video"

        await connections[0].receive_track(Track())

        peer_id, stream = conference_listener.on_peer_stream.call_args.args
        assert peer_id == "bob"
        assert stream.has_video is True


# ===== 비디오 추가 / 토글 =====


class TestMediaControls:
    @pytest.mark.asyncio
    async def test_add_video_renegotiates_connected_peers(self, manager, channel, connections):
        """비디오 추가 시 연결된 피어에게만 재협상 offer"""
        await _join_with(manager, "bob", "carol")
        await connections[0].set_state("connected")

        await manager.add_video()

        offers = channel.of_type("CONF_OFFER")[2:]
        assert [o["extra"]["target"] for o in offers] == ["bob"]
        assert offers[0]["extra"]["renegotiate"] is True
        assert offers[0]["extra"]["callType"] == "video"
        assert manager.media_kind == MediaKind.VIDEO
        assert len(connections[0].tracks) == 2

    @pytest.mark.asyncio
    async def test_renegotiation_offer_answered_with_flag(self, manager, channel, connections):
        await _join_with(manager, "bob")

        await manager.handle_offer(
            make_message("CONF_OFFER", "bob", confId="conf-1", sdp=offer_json(), renegotiate=True)
        )

        answer = channel.of_type("CONF_ANSWER")[0]
        assert answer["extra"]["renegotiate"] is True
        assert len(connections) == 1

    @pytest.mark.asyncio
    async def test_add_video_requires_active(self, manager):
        with pytest.raises(InvalidStateError):
            await manager.add_video()

    @pytest.mark.asyncio
    async def test_toggle_mute(self, manager):
        await manager.create_conference()

        assert manager.toggle_mute() is True
        assert [t.enabled for t in manager.local_stream.audio_tracks] == [False]
        assert manager.toggle_video() is False
        assert manager.state == ConferenceState.ACTIVE
