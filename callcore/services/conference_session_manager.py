"""풀메시 컨퍼런스 상태 머신

idle → joining → active → idle

참여 프로토콜:
1. REST로 룸 생성/참여 후 CONF_JOIN 브로드캐스트
2. 서버가 새 참가자에게만 CONF_PEERS(기존 참가자 명단)를 보냄
3. 새 참가자가 기존 참가자 각각에게 CONF_OFFER를 보냄 (기존 참가자는 먼저 offer하지 않음)
4. 기존 참가자는 CONF_ANSWER로 응답, candidate는 CONF_ICE로 피어 간 전달
5. CONF_LEAVE는 해당 피어 연결만 정리 (남은 피어가 0명이어도 세션 유지)
"""

import logging
from typing import Any, Callable

from aiortc.contrib.media import MediaRelay

from callcore.core.config import Settings, get_settings
from callcore.core.exceptions import (
    CallCoreError,
    InvalidStateError,
    NegotiationError,
    PeerUnreachable,
    RoomFull,
    RoomServiceError,
    SessionAborted,
    SignalingUnavailable,
)
from callcore.core.telemetry import get_call_metrics
from callcore.core.webrtc_config import SYSTEM_SENDER, ConnectionStateName, EndReason
from callcore.schemas.session import ConferenceSession, ConferenceState, MediaKind
from callcore.schemas.signaling import SignalingMessage, SignalingMessageType
from callcore.services.conference_room_client import ConferenceRoomClient
from callcore.services.listeners import ConferenceSessionListener, notify
from callcore.services.media import LocalMediaStream, MediaAcquisition
from callcore.services.media_keys import MediaKeyProvider
from callcore.services.peer_connection import ConnectionFactory, PeerConnectionEntry, PeerRegistry
from callcore.services.scheduler import LoopScheduler, Scheduler, TimerHandle
from callcore.services.signaling import SignalingSender
from callcore.utils.sdp import description_from_json, description_to_json

logger = logging.getLogger(__name__)


class ConferenceSessionManager:
    """풀메시 컨퍼런스 세션 관리자

    원격 참가자마다 PeerConnectionEntry 하나를 소유한다.
    로컬 트랙은 MediaRelay로 피어 수만큼 복제해서 붙인다.
    """

    def __init__(
        self,
        sender: SignalingSender,
        media: MediaAcquisition,
        connection_factory: ConnectionFactory,
        room_client: ConferenceRoomClient,
        scheduler: Scheduler | None = None,
        listener: ConferenceSessionListener | None = None,
        settings: Settings | None = None,
        key_provider_factory: Callable[[], MediaKeyProvider] | None = None,
    ):
        """
        Args:
            sender: 시그널링 송신기 (sender_id가 자신의 식별자)
            media: 카메라/마이크 획득
            connection_factory: RTCPeerConnection 생성기
            room_client: 컨퍼런스 룸 REST 클라이언트
            scheduler: 시계/타이머
            listener: 호스트 이벤트 리스너
            settings: 설정
            key_provider_factory: 세션별 미디어 키 관리자 생성기 (None이면 키 교환 안 함)
        """
        self.sender = sender
        self.media = media
        self.room_client = room_client
        self.scheduler = scheduler or LoopScheduler()
        self.listener = listener or ConferenceSessionListener()
        self.settings = settings or get_settings()
        self.key_provider_factory = key_provider_factory
        self.peers = PeerRegistry(connection_factory)
        self.session = ConferenceSession(peers=self.peers)

        self.keys: MediaKeyProvider | None = None
        self._relay = MediaRelay()
        self._generation = 0
        self._duration_timer: TimerHandle | None = None

    # ===== 상태 조회 =====

    @property
    def self_id(self) -> str:
        return self.sender.sender_id

    @property
    def state(self) -> ConferenceState:
        return self.session.state

    @property
    def conference_id(self) -> str | None:
        return self.session.conference_id

    @property
    def participants(self) -> list[str]:
        return list(self.session.participants)

    @property
    def media_kind(self) -> MediaKind:
        return self.session.media_kind

    @property
    def local_stream(self) -> LocalMediaStream | None:
        return self.session.local_stream

    @property
    def duration(self) -> int:
        if self.session.started_at is None:
            return 0
        return int(self.scheduler.now() - self.session.started_at)

    # ===== 명령 =====

    async def create_conference(
        self,
        kind: MediaKind | str = MediaKind.AUDIO,
        room_id: str | None = None,
    ) -> str:
        """새 컨퍼런스 생성 후 첫 참가자로 입장

        Returns:
            컨퍼런스 ID

        Raises:
            InvalidStateError: idle이 아닐 때
            MediaError / RoomServiceError / SignalingUnavailable: 설정 실패 (세션은 idle로 복귀)
        """
        generation = self._begin(kind, room_id)
        try:
            await self._acquire_media(generation)
            info = await self.room_client.create_conference(room_id)
        except SessionAborted:
            raise
        except Exception as e:
            await self._abort_setup(generation, e)
            raise
        await self._ensure_registered(generation, info.conf_id)

        await self._enter(generation, info.conf_id)
        return info.conf_id

    async def join_conference(self, conference_id: str, kind: MediaKind | str = MediaKind.AUDIO) -> None:
        """기존 컨퍼런스 참여

        Raises:
            InvalidStateError: idle이 아닐 때
            RoomFull: 정원 초과 (세션은 idle로 복귀)
            MediaError / RoomServiceError / SignalingUnavailable: 설정 실패
        """
        generation = self._begin(kind, None)
        try:
            await self._acquire_media(generation)
            info = await self.room_client.join_conference(conference_id)
        except SessionAborted:
            raise
        except Exception as e:
            await self._abort_setup(generation, e)
            raise
        await self._ensure_registered(generation, conference_id)

        self.session.room_id = info.room_id
        await self._enter(generation, conference_id)

    async def leave_conference(self) -> None:
        """컨퍼런스 퇴장 (idle이면 아무것도 하지 않음)"""
        if self.state == ConferenceState.IDLE:
            return

        conference_id = self.session.conference_id
        logger.info(f"[ConferenceSessionManager] Leaving conference {conference_id}")
        try:
            if conference_id:
                await self.sender.send(
                    SignalingMessageType.CONF_LEAVE,
                    room_id=self.session.room_id,
                    extra={"confId": conference_id},
                )
                await self._leave_room(conference_id)
        finally:
            await self.cleanup(EndReason.LEFT)

    async def add_video(self) -> None:
        """음성 컨퍼런스에 비디오 추가 (연결된 모든 피어와 재협상)

        Raises:
            InvalidStateError: active가 아닐 때
            MediaError: 카메라 획득 실패 (세션 유지)
        """
        if self.state != ConferenceState.ACTIVE:
            raise InvalidStateError(f"Cannot add video in state {self.state.value}")

        stream = self.session.local_stream
        if stream is not None and stream.video_tracks:
            logger.debug("[ConferenceSessionManager] Video track already present")
            return

        generation = self._generation
        track = await self.media.acquire_video()
        if generation != self._generation or self.state != ConferenceState.ACTIVE:
            track.stop()
            raise SessionAborted("Conference ended while acquiring camera")

        if stream is None:
            stream = LocalMediaStream()
            self.session.local_stream = stream
        stream.add_track(track)
        self.session.media_kind = MediaKind.VIDEO
        self.session.video_suspended = False

        for entry in self.peers:
            if entry.connection is None or not entry.connected or entry.closed:
                continue
            entry.add_track(self._relay.subscribe(track))
            try:
                offer = await entry.create_offer(self.settings.video_max_bitrate)
            except Exception as e:
                if generation != self._generation:
                    return
                self._report(NegotiationError(f"Renegotiation offer to {entry.peer_id} failed: {e}"))
                continue

            logger.info(f"[ConferenceSessionManager] Sending renegotiation offer to {entry.peer_id}")
            await self._send_to(
                SignalingMessageType.CONF_OFFER,
                entry.peer_id,
                {
                    "sdp": description_to_json(offer),
                    "callType": MediaKind.VIDEO.value,
                    "renegotiate": True,
                },
            )
            if generation != self._generation:
                return

    def toggle_mute(self) -> bool:
        """마이크 음소거 토글"""
        stream = self.session.local_stream
        if stream is None:
            return self.session.muted
        self.session.muted = not self.session.muted
        stream.set_audio_enabled(not self.session.muted)
        return self.session.muted

    def toggle_video(self) -> bool:
        """비디오 일시정지 토글"""
        stream = self.session.local_stream
        if stream is None or not stream.video_tracks:
            return self.session.video_suspended
        self.session.video_suspended = not self.session.video_suspended
        stream.set_video_enabled(not self.session.video_suspended)
        return self.session.video_suspended

    async def cleanup(self, reason: str | None = None) -> None:
        """모든 피어 연결/미디어/타이머 해제 후 idle로 복귀 (여러 번 호출해도 안전)"""
        self._generation += 1
        previous, self.session = self.session, ConferenceSession(peers=self.peers)

        if self._duration_timer is not None:
            self._duration_timer.cancel()
            self._duration_timer = None

        if previous.local_stream is not None:
            previous.local_stream.stop()

        await self.peers.close_all()

        if self.keys is not None:
            self.keys.destroy()
            self.keys = None

        if previous.state != ConferenceState.IDLE:
            logger.info(
                f"[ConferenceSessionManager] Conference {previous.conference_id} cleaned up "
                f"(reason={reason or EndReason.LEFT})"
            )
            notify(self.listener, "on_state_changed", ConferenceState.IDLE)
            notify(self.listener, "on_participants_changed", [])
            notify(self.listener, "on_call_ended", reason or EndReason.LEFT)

    # ===== 수신 메시지 핸들러 =====

    async def handle_join(self, message: SignalingMessage) -> None:
        """CONF_JOIN 수신: 새 참가자를 명단에 추가 (offer는 새 참가자가 보냄)"""
        peer_id = message.sender
        if not self._accepts(message) or peer_id == self.self_id:
            return

        if peer_id not in self.session.participants:
            self.session.participants.append(peer_id)
            logger.info(f"[ConferenceSessionManager] {peer_id} joined conference {self.conference_id}")
            notify(self.listener, "on_participants_changed", self.participants)

    async def handle_peers(self, message: SignalingMessage) -> None:
        """CONF_PEERS 수신: 기존 참가자 각각에게 offer 전송"""
        if not self._accepts(message, allow_system=True):
            return

        peer_ids = [p for p in dict.fromkeys(message.peers) if p != self.self_id]
        if len(peer_ids) + 1 > self.settings.max_participants:
            error = RoomFull(
                f"Conference {self.conference_id} is full "
                f"({len(peer_ids) + 1}/{self.settings.max_participants})"
            )
            logger.warning(f"[ConferenceSessionManager] {error}")
            conference_id = self.conference_id
            try:
                await self.sender.send(
                    SignalingMessageType.CONF_LEAVE,
                    room_id=self.session.room_id,
                    extra={"confId": conference_id, "reason": EndReason.ROOM_FULL},
                )
                await self._leave_room(conference_id)
            finally:
                await self.cleanup(EndReason.ROOM_FULL)
            self._report(error)
            return

        for peer_id in peer_ids:
            if peer_id not in self.session.participants:
                self.session.participants.append(peer_id)
        notify(self.listener, "on_participants_changed", self.participants)
        logger.info(f"[ConferenceSessionManager] Offering to {len(peer_ids)} existing peers")

        generation = self._generation
        for peer_id in peer_ids:
            existing = self.peers.get(peer_id)
            if existing is not None and existing.connection is not None:
                continue
            await self._offer_to(peer_id)
            if generation != self._generation:
                return

    async def handle_offer(self, message: SignalingMessage) -> None:
        """CONF_OFFER 수신: 엔트리 생성, offer 적용, answer 전송"""
        peer_id = message.sender
        if not self._accepts(message) or not peer_id or peer_id == self.self_id:
            return

        generation = self._generation
        existing = self.peers.get(peer_id)
        renegotiation = existing is not None and existing.connection is not None

        try:
            offer = description_from_json(message.sdp, "offer")
            entry = await self._open_entry(peer_id)
            self._ensure_current(generation)
            if message.media_key and self.keys is not None:
                self.keys.set_peer_key(peer_id, message.media_key)

            await entry.apply_remote_description(offer)
            self._ensure_current(generation)
            answer = await entry.create_answer(self.settings.video_max_bitrate)
            self._ensure_current(generation)
        except SessionAborted:
            return
        except Exception as e:
            await self._peer_failed(peer_id, e, remove=not renegotiation)
            return

        if peer_id not in self.session.participants:
            self.session.participants.append(peer_id)
            notify(self.listener, "on_participants_changed", self.participants)

        extra: dict[str, Any] = {"sdp": description_to_json(answer)}
        if renegotiation:
            extra["renegotiate"] = True
        if self.keys is not None:
            extra["mediaKey"] = self.keys.current_key()
        await self._send_to(SignalingMessageType.CONF_ANSWER, peer_id, extra)

    async def handle_answer(self, message: SignalingMessage) -> None:
        """CONF_ANSWER 수신: 보낸 offer에 대한 answer 적용"""
        peer_id = message.sender
        if not self._accepts(message):
            return

        entry = self.peers.get(peer_id)
        if entry is None or entry.connection is None:
            logger.warning(f"[ConferenceSessionManager] CONF_ANSWER from unknown peer {peer_id}")
            return

        if message.media_key and self.keys is not None:
            self.keys.set_peer_key(peer_id, message.media_key)

        try:
            await entry.apply_remote_description(description_from_json(message.sdp, "answer"))
        except Exception as e:
            await self._peer_failed(peer_id, e, remove=not (message.renegotiate and entry.connected))

    async def handle_ice(self, message: SignalingMessage) -> None:
        """CONF_ICE 수신: candidate 적용/큐잉 또는 미디어 키 교체"""
        peer_id = message.sender
        if not self._accepts(message) or not peer_id:
            return

        if message.key_rotation:
            if message.media_key and self.keys is not None:
                self.keys.set_peer_key(peer_id, message.media_key)
                logger.info(f"[ConferenceSessionManager] Media key rotated by {peer_id}")
            return

        if not message.candidate:
            return

        # 명단에 없고 엔트리도 없는 피어(퇴장 후 늦게 온 candidate 등)는 버림
        if peer_id not in self.session.participants and peer_id not in self.peers:
            logger.debug(f"[ConferenceSessionManager] Dropping candidate from non-member {peer_id}")
            return

        entry = self.peers.get_or_create(peer_id)
        try:
            await entry.add_remote_candidate(message.candidate)
        except NegotiationError as e:
            logger.warning(f"[ConferenceSessionManager] Bad candidate from {peer_id}: {e}")
            self._report(e)

    async def handle_leave(self, message: SignalingMessage) -> None:
        """CONF_LEAVE 수신: 해당 피어만 정리, 시스템의 "full"이면 참여 중단"""
        peer_id = message.sender

        if peer_id == SYSTEM_SENDER and message.reason == EndReason.ROOM_FULL:
            if self.state == ConferenceState.IDLE:
                return
            error = RoomFull(f"Conference {self.conference_id} is full")
            logger.warning(f"[ConferenceSessionManager] {error}")
            await self.cleanup(EndReason.ROOM_FULL)
            self._report(error)
            return

        if not self._accepts(message) or not peer_id or peer_id == self.self_id:
            return

        logger.info(f"[ConferenceSessionManager] {peer_id} left conference {self.conference_id}")
        await self._remove_peer(peer_id)
        await self._rotate_media_key()

    # ===== 내부 =====

    def _begin(self, kind: MediaKind | str, room_id: str | None) -> int:
        if self.state != ConferenceState.IDLE:
            raise InvalidStateError(f"Cannot join conference in state {self.state.value}")

        kind = MediaKind(kind)
        self.session = ConferenceSession(peers=self.peers, media_kind=kind, room_id=room_id)
        self._set_state(ConferenceState.JOINING)
        self._relay = MediaRelay()
        if self.key_provider_factory is not None:
            self.keys = self.key_provider_factory()
        return self._generation

    async def _acquire_media(self, generation: int) -> None:
        stream = await self.media.acquire(self.session.media_kind)
        if generation != self._generation:
            stream.stop()
            raise SessionAborted("Conference was cleaned up during media acquisition")
        self.session.local_stream = stream

    async def _ensure_registered(self, generation: int, conference_id: str) -> None:
        """REST 등록 도중 cleanup되었으면 서버 명단에서 빠진 뒤 SessionAborted"""
        if generation == self._generation:
            return
        logger.info(f"[ConferenceSessionManager] Setup aborted after registering in {conference_id}, leaving")
        await self._leave_room(conference_id)
        raise SessionAborted(f"Conference {conference_id} was cleaned up while joining")

    async def _enter(self, generation: int, conference_id: str) -> None:
        """룸 등록 이후: 명단 초기화, CONF_JOIN 브로드캐스트, active 전이"""
        self.session.conference_id = conference_id
        if self.self_id not in self.session.participants:
            self.session.participants.insert(0, self.self_id)
        notify(self.listener, "on_participants_changed", self.participants)

        sent = await self.sender.send(
            SignalingMessageType.CONF_JOIN,
            room_id=self.session.room_id,
            extra={"confId": conference_id},
        )
        await self._ensure_registered(generation, conference_id)
        if not sent:
            error = SignalingUnavailable(f"Could not announce join to conference {conference_id}")
            logger.error(f"[ConferenceSessionManager] {error}")
            await self._leave_room(conference_id)
            await self.cleanup(EndReason.ERROR)
            raise error

        self._set_state(ConferenceState.ACTIVE)
        logger.info(f"[ConferenceSessionManager] Joined conference {conference_id}")
        metrics = get_call_metrics()
        if metrics:
            metrics.conference_joins_total.add(1, {"kind": self.session.media_kind.value})

    async def _abort_setup(self, generation: int, error: Exception) -> None:
        """설정 단계 실패 시 cleanup (호출자가 에러를 다시 던짐)"""
        if generation != self._generation:
            raise SessionAborted("Conference was cleaned up during setup") from error

        logger.error(f"[ConferenceSessionManager] Conference setup failed: {error}")
        await self.cleanup(EndReason.ERROR)
        if not isinstance(error, CallCoreError):
            raise NegotiationError(f"Conference setup failed: {error}") from error

    async def _leave_room(self, conference_id: str | None) -> None:
        if not conference_id:
            return
        try:
            await self.room_client.leave_conference(conference_id)
        except RoomServiceError as e:
            logger.warning(f"[ConferenceSessionManager] Failed to leave room {conference_id}: {e}")

    async def _open_entry(self, peer_id: str) -> PeerConnectionEntry:
        """연결이 붙은 엔트리 반환, 새로 연결했으면 로컬 트랙을 붙임"""
        existing = self.peers.get(peer_id)
        fresh = existing is None or existing.connection is None
        entry = await self.peers.open(peer_id, self._on_track, self._on_connection_state)
        if fresh and self.session.local_stream is not None:
            for track in self.session.local_stream.tracks:
                entry.add_track(self._relay.subscribe(track))
        return entry

    async def _offer_to(self, peer_id: str) -> None:
        generation = self._generation
        try:
            entry = await self._open_entry(peer_id)
            self._ensure_current(generation)
            offer = await entry.create_offer(self.settings.video_max_bitrate)
            self._ensure_current(generation)
        except SessionAborted:
            return
        except Exception as e:
            await self._peer_failed(peer_id, e, remove=True)
            return

        extra: dict[str, Any] = {
            "sdp": description_to_json(offer),
            "callType": self.session.media_kind.value,
        }
        if self.keys is not None:
            extra["mediaKey"] = self.keys.current_key()
        await self._send_to(SignalingMessageType.CONF_OFFER, peer_id, extra)

    async def _send_to(self, message_type: SignalingMessageType, peer_id: str, extra: dict[str, Any]) -> bool:
        payload = {"confId": self.session.conference_id, **extra}
        return await self.sender.send(message_type, peer_id, self.session.room_id, payload)

    async def _peer_failed(self, peer_id: str, error: Exception, remove: bool) -> None:
        """피어 하나의 실패: 해당 피어만 정리 (세션 유지)"""
        if not isinstance(error, CallCoreError):
            error = NegotiationError(f"Negotiation with {peer_id} failed: {error}")
        logger.error(f"[ConferenceSessionManager] Peer {peer_id} failed: {error}")
        self._count_peer_failure("negotiation")
        if remove:
            await self._remove_peer(peer_id)
        self._report(error)

    async def _remove_peer(self, peer_id: str) -> None:
        await self.peers.remove(peer_id)
        if self.keys is not None:
            self.keys.remove_peer_key(peer_id)

        if peer_id in self.session.participants:
            self.session.participants.remove(peer_id)
            notify(self.listener, "on_participants_changed", self.participants)
        notify(self.listener, "on_peer_removed", peer_id)

    async def _rotate_media_key(self) -> None:
        """퇴장 후 남은 피어에게 새 미디어 키 전달"""
        if self.keys is None or len(self.peers) == 0:
            return

        new_key = self.keys.rotate()
        for peer_id in self.peers.peer_ids:
            await self._send_to(
                SignalingMessageType.CONF_ICE,
                peer_id,
                {"keyRotation": True, "mediaKey": new_key},
            )

    async def _on_track(self, entry: PeerConnectionEntry, track) -> None:
        if self.peers.get(entry.peer_id) is not entry:
            return
        notify(self.listener, "on_peer_stream", entry.peer_id, entry.remote_stream)

    async def _on_connection_state(self, entry: PeerConnectionEntry, state: str) -> None:
        if self.peers.get(entry.peer_id) is not entry:
            return

        if state == ConnectionStateName.CONNECTED:
            logger.info(f"[ConferenceSessionManager] Connected to {entry.peer_id}")
            if self.session.started_at is None:
                self.session.started_at = self.scheduler.now()
                self._duration_timer = self.scheduler.call_later(1.0, self._tick_duration)
        elif state in ConnectionStateName.TERMINAL_STATES:
            error = PeerUnreachable(entry.peer_id, state)
            logger.warning(f"[ConferenceSessionManager] {error}")
            self._count_peer_failure(state)
            await self._remove_peer(entry.peer_id)
            self._report(error)

    def _count_peer_failure(self, cause: str) -> None:
        metrics = get_call_metrics()
        if metrics:
            metrics.conference_peer_failures_total.add(1, {"cause": cause})

    def _tick_duration(self) -> None:
        if self.state == ConferenceState.IDLE or self.session.started_at is None:
            return
        notify(self.listener, "on_duration", self.duration)
        self._duration_timer = self.scheduler.call_later(1.0, self._tick_duration)

    def _accepts(self, message: SignalingMessage, allow_system: bool = False) -> bool:
        """현재 컨퍼런스에 해당하는 메시지인지"""
        if self.state == ConferenceState.IDLE:
            logger.debug(f"[ConferenceSessionManager] Ignoring {message.type} while idle")
            return False
        if not allow_system and message.sender == SYSTEM_SENDER:
            return False
        conference_id = message.conference_id
        if conference_id and self.session.conference_id and conference_id != self.session.conference_id:
            logger.warning(
                f"[ConferenceSessionManager] Ignoring {message.type} for conference {conference_id}"
            )
            return False
        return True

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise SessionAborted("Conference was cleaned up")

    def _set_state(self, state: ConferenceState) -> None:
        if self.session.state == state:
            return
        logger.info(f"[ConferenceSessionManager] State: {self.session.state.value} -> {state.value}")
        self.session.state = state
        notify(self.listener, "on_state_changed", state)

    def _report(self, error: Exception) -> None:
        notify(self.listener, "on_error", error)
