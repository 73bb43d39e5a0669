"""1:1 통화 상태 머신

idle → outgoing/incoming → connecting → active → idle

명령 메서드(start_call, accept_call, ...)는 허용되지 않는 상태에서 InvalidStateError를 던지고,
수신 핸들러(handle_*)는 예외를 던지지 않고 로그/리스너로만 보고한다.
"""

import logging

from callcore.core.config import Settings, get_settings
from callcore.core.exceptions import (
    CallCoreError,
    InvalidStateError,
    NegotiationError,
    PeerUnreachable,
    SessionAborted,
)
from callcore.core.telemetry import get_call_metrics
from callcore.core.webrtc_config import ConnectionStateName, EndReason
from callcore.schemas.session import CallSession, CallState, MediaKind
from callcore.schemas.signaling import SignalingMessage, SignalingMessageType
from callcore.services.listeners import CallSessionListener, notify
from callcore.services.media import LocalMediaStream, MediaAcquisition, RemoteMediaStream
from callcore.services.peer_connection import ConnectionFactory, PeerConnectionEntry, PeerRegistry
from callcore.services.scheduler import LoopScheduler, Scheduler, TimerHandle
from callcore.services.signaling import SignalingSender
from callcore.utils.sdp import description_from_json, description_to_json

logger = logging.getLogger(__name__)


class CallSessionManager:
    """1:1 통화 세션 관리자

    세션당 PeerConnectionEntry 하나, 로컬 미디어, 링톤/타이머 부수효과를 소유한다.
    """

    def __init__(
        self,
        sender: SignalingSender,
        media: MediaAcquisition,
        connection_factory: ConnectionFactory,
        scheduler: Scheduler | None = None,
        listener: CallSessionListener | None = None,
        settings: Settings | None = None,
    ):
        """
        Args:
            sender: 시그널링 송신기
            media: 카메라/마이크 획득
            connection_factory: RTCPeerConnection 생성기
            scheduler: 시계/타이머 (None이면 이벤트 루프 사용)
            listener: 호스트 이벤트 리스너
            settings: 설정
        """
        self.sender = sender
        self.media = media
        self.scheduler = scheduler or LoopScheduler()
        self.listener = listener or CallSessionListener()
        self.settings = settings or get_settings()
        self.peers = PeerRegistry(connection_factory)
        self.session = CallSession()

        self._generation = 0
        self._ringing = False
        self._incoming_timer: TimerHandle | None = None
        self._outgoing_timer: TimerHandle | None = None
        self._duration_timer: TimerHandle | None = None

    # ===== 상태 조회 =====

    @property
    def state(self) -> CallState:
        return self.session.state

    @property
    def peer_id(self) -> str | None:
        return self.session.peer_id

    @property
    def local_stream(self) -> LocalMediaStream | None:
        return self.session.local_stream

    @property
    def remote_stream(self) -> RemoteMediaStream | None:
        return self.session.remote_stream

    @property
    def duration(self) -> int:
        """통화 시간 (초)"""
        if self.session.started_at is None:
            return 0
        return int(self.scheduler.now() - self.session.started_at)

    @property
    def incoming_timeout(self) -> TimerHandle | None:
        """수신 통화 자동 종료 타이머 핸들 (호스트가 직접 관리하려면 cancel 후 expire_incoming_call 호출)"""
        return self._incoming_timer

    @property
    def entry(self) -> PeerConnectionEntry | None:
        if self.session.peer_id is None:
            return None
        return self.peers.get(self.session.peer_id)

    # ===== 명령 =====

    async def start_call(
        self,
        peer_id: str,
        kind: MediaKind | str = MediaKind.AUDIO,
        room_id: str | None = None,
    ) -> None:
        """발신 통화 시작

        Args:
            peer_id: 상대방 식별자
            kind: audio / video
            room_id: 채팅방 ID (선택)

        Raises:
            InvalidStateError: idle이 아닐 때
            MediaError: 미디어 획득 실패 (세션은 idle로 복귀)
            NegotiationError: offer 생성 실패 (세션은 idle로 복귀)
            SessionAborted: 진행 중 상대가 종료하여 cleanup됨
        """
        if self.state != CallState.IDLE:
            raise InvalidStateError(f"Cannot start call in state {self.state.value}")

        kind = MediaKind(kind)
        await self._discard_stale_entries(keep=None)
        generation = self._generation
        self.session = CallSession(peer_id=peer_id, room_id=room_id, media_kind=kind)
        self._set_state(CallState.OUTGOING)
        self._start_ringtone(outgoing=True)
        logger.info(f"[CallSessionManager] Starting {kind.value} call to {peer_id}")

        try:
            stream = await self.media.acquire(kind)
            if generation != self._generation:
                stream.stop()
                raise SessionAborted(f"Call to {peer_id} was cleaned up during media acquisition")
            self.session.local_stream = stream

            entry = await self.peers.open(peer_id, self._on_track, self._on_connection_state)
            self._ensure_current(generation)
            entry.add_local_stream(stream)

            offer = await entry.create_offer(self.settings.video_max_bitrate)
            self._ensure_current(generation)
        except SessionAborted:
            raise
        except Exception as e:
            await self._abort_setup(generation, e)
            return

        await self.sender.send(
            SignalingMessageType.CALL_OFFER,
            peer_id,
            room_id,
            {"callType": kind.value, "sdp": description_to_json(offer)},
        )
        if generation == self._generation and self.state == CallState.OUTGOING:
            self._outgoing_timer = self.scheduler.call_later(
                self.settings.outgoing_call_timeout, self._on_outgoing_timeout
            )

        metrics = get_call_metrics()
        if metrics:
            metrics.calls_started_total.add(1, {"direction": "outgoing", "kind": kind.value})

    async def accept_call(self) -> None:
        """수신 통화 수락

        Raises:
            InvalidStateError: incoming이 아닐 때
            MediaError / NegotiationError: 설정 실패 (상대에게 CALL_END{error} 전송 후 idle)
        """
        if self.state != CallState.INCOMING or not self.session.pending_offer:
            raise InvalidStateError(f"Cannot accept call in state {self.state.value}")

        generation = self._generation
        peer_id = self.session.peer_id
        raw_offer, self.session.pending_offer = self.session.pending_offer, None

        self._cancel_timer("_incoming_timer")
        self._set_state(CallState.CONNECTING)
        self._stop_ringtone()
        logger.info(f"[CallSessionManager] Accepting {self.session.media_kind.value} call from {peer_id}")

        try:
            offer = description_from_json(raw_offer, "offer")
            stream = await self.media.acquire(self.session.media_kind)
            if generation != self._generation:
                stream.stop()
                raise SessionAborted(f"Call from {peer_id} was cleaned up during media acquisition")
            self.session.local_stream = stream

            entry = await self.peers.open(peer_id, self._on_track, self._on_connection_state)
            self._ensure_current(generation)
            entry.add_local_stream(stream)

            await entry.apply_remote_description(offer)
            self._ensure_current(generation)

            answer = await entry.create_answer(self.settings.video_max_bitrate)
            self._ensure_current(generation)
        except SessionAborted:
            raise
        except Exception as e:
            await self._abort_setup(generation, e, notify_peer=True)
            return

        await self.sender.send(
            SignalingMessageType.CALL_ANSWER,
            peer_id,
            self.session.room_id,
            {"sdp": description_to_json(answer)},
        )

    async def reject_call(self) -> None:
        """수신 통화 거절"""
        if self.state != CallState.INCOMING:
            raise InvalidStateError(f"Cannot reject call in state {self.state.value}")

        peer_id = self.session.peer_id
        logger.info(f"[CallSessionManager] Rejecting call from {peer_id}")
        try:
            await self.sender.send(SignalingMessageType.CALL_REJECT, peer_id, self.session.room_id)
        finally:
            await self.cleanup(EndReason.REJECTED)

    async def end_call(self, silent: bool = False) -> None:
        """통화 종료 (idle이면 아무것도 하지 않음)

        Args:
            silent: True면 상대에게 CALL_END를 보내지 않음 (컨퍼런스 전환 등)
        """
        if self.state == CallState.IDLE:
            return

        peer_id = self.session.peer_id
        logger.info(f"[CallSessionManager] Ending call with {peer_id} (silent={silent})")
        try:
            if not silent and peer_id:
                await self.sender.send(
                    SignalingMessageType.CALL_END,
                    peer_id,
                    self.session.room_id,
                    {"reason": EndReason.HANGUP},
                )
        finally:
            await self.cleanup(EndReason.HANGUP)

    async def expire_incoming_call(self) -> None:
        """수신 통화 응답 시간 초과 처리 (상대에게 CALL_END{timeout} 전송 후 idle)"""
        if self.state != CallState.INCOMING:
            return

        peer_id = self.session.peer_id
        logger.info(f"[CallSessionManager] Incoming call from {peer_id} timed out")
        try:
            await self.sender.send(
                SignalingMessageType.CALL_END,
                peer_id,
                self.session.room_id,
                {"reason": EndReason.TIMEOUT},
            )
        finally:
            await self.cleanup(EndReason.TIMEOUT)

    async def add_video(self) -> None:
        """음성 통화에 비디오 추가 (재협상)

        실패해도 통화는 유지된다.

        Raises:
            InvalidStateError: active가 아닐 때
            MediaError: 카메라 획득 실패
            NegotiationError: 재협상 offer 생성 실패
        """
        if self.state != CallState.ACTIVE:
            raise InvalidStateError(f"Cannot add video in state {self.state.value}")

        stream = self.session.local_stream
        if stream is not None and stream.video_tracks:
            logger.debug("[CallSessionManager] Video track already present")
            return

        generation = self._generation
        peer_id = self.session.peer_id
        entry = self.entry

        track = await self.media.acquire_video()
        if generation != self._generation or self.state != CallState.ACTIVE:
            track.stop()
            raise SessionAborted("Call ended while acquiring camera")

        if stream is None:
            stream = LocalMediaStream()
            self.session.local_stream = stream
        stream.add_track(track)
        entry.add_track(track)
        self.session.media_kind = MediaKind.VIDEO
        self.session.video_suspended = False

        try:
            offer = await entry.create_offer(self.settings.video_max_bitrate)
        except Exception as e:
            if generation != self._generation:
                raise SessionAborted("Call ended during renegotiation") from e
            raise NegotiationError(f"Renegotiation offer failed: {e}") from e

        logger.info(f"[CallSessionManager] Sending renegotiation offer to {peer_id}")
        await self.sender.send(
            SignalingMessageType.CALL_OFFER,
            peer_id,
            self.session.room_id,
            {
                "callType": MediaKind.VIDEO.value,
                "sdp": description_to_json(offer),
                "renegotiate": True,
            },
        )

    def toggle_mute(self) -> bool:
        """마이크 음소거 토글 (상태 전이 없음)

        Returns:
            음소거 여부
        """
        stream = self.session.local_stream
        if stream is None:
            return self.session.muted
        self.session.muted = not self.session.muted
        stream.set_audio_enabled(not self.session.muted)
        return self.session.muted

    def toggle_video(self) -> bool:
        """비디오 일시정지 토글 (상태 전이 없음)

        Returns:
            비디오 정지 여부
        """
        stream = self.session.local_stream
        if stream is None or not stream.video_tracks:
            return self.session.video_suspended
        self.session.video_suspended = not self.session.video_suspended
        stream.set_video_enabled(not self.session.video_suspended)
        return self.session.video_suspended

    async def cleanup(self, reason: str | None = None) -> None:
        """모든 자원 해제 후 idle로 복귀 (어느 상태에서든, 여러 번 호출해도 안전)

        Args:
            reason: 종료 사유 (리스너 on_call_ended로 전달)
        """
        self._generation += 1
        previous, self.session = self.session, CallSession()

        for name in ("_incoming_timer", "_outgoing_timer", "_duration_timer"):
            self._cancel_timer(name)
        self._stop_ringtone()

        if previous.local_stream is not None:
            previous.local_stream.stop()

        await self.peers.close_all()

        if previous.state != CallState.IDLE:
            logger.info(
                f"[CallSessionManager] Call with {previous.peer_id} cleaned up "
                f"(reason={reason or EndReason.HANGUP})"
            )
            notify(self.listener, "on_state_changed", CallState.IDLE)
            notify(self.listener, "on_call_ended", reason or EndReason.HANGUP)

            metrics = get_call_metrics()
            if metrics:
                metrics.calls_ended_total.add(1, {"reason": reason or EndReason.HANGUP})
                if previous.started_at is not None:
                    metrics.call_duration.record(self.scheduler.now() - previous.started_at)

    # ===== 수신 메시지 핸들러 =====

    async def handle_offer(self, message: SignalingMessage) -> None:
        """CALL_OFFER 수신"""
        peer_id = message.sender
        if not peer_id:
            logger.warning("[CallSessionManager] CALL_OFFER without sender ignored")
            return

        if self.state != CallState.IDLE:
            if (
                message.renegotiate
                and self.state == CallState.ACTIVE
                and peer_id == self.session.peer_id
            ):
                await self._handle_renegotiation_offer(message)
                return

            logger.info(f"[CallSessionManager] Busy, rejecting offer from {peer_id}")
            await self.sender.send(SignalingMessageType.CALL_BUSY, peer_id, message.room_id)
            return

        if not message.sdp:
            logger.warning(f"[CallSessionManager] CALL_OFFER from {peer_id} without sdp ignored")
            return

        await self._discard_stale_entries(keep=peer_id)
        kind = MediaKind.parse(message.call_type)
        self.session = CallSession(
            peer_id=peer_id,
            room_id=message.room_id,
            media_kind=kind,
            pending_offer=message.sdp,
        )
        # 수락 전 도착하는 candidate 보관용
        self.peers.get_or_create(peer_id)

        self._set_state(CallState.INCOMING)
        self._start_ringtone(outgoing=False)
        notify(self.listener, "on_incoming_call", peer_id, kind.value)
        self._incoming_timer = self.scheduler.call_later(
            self.settings.incoming_call_timeout, self.expire_incoming_call
        )
        logger.info(f"[CallSessionManager] Incoming {kind.value} call from {peer_id}")

        metrics = get_call_metrics()
        if metrics:
            metrics.calls_started_total.add(1, {"direction": "incoming", "kind": kind.value})

    async def handle_answer(self, message: SignalingMessage) -> None:
        """CALL_ANSWER 수신"""
        peer_id = message.sender
        if peer_id != self.session.peer_id or self.state not in (
            CallState.OUTGOING,
            CallState.CONNECTING,
            CallState.ACTIVE,
        ):
            logger.warning(
                f"[CallSessionManager] Unexpected CALL_ANSWER from {peer_id} in state {self.state.value}"
            )
            return

        entry = self.entry
        if entry is None or entry.connection is None or not message.sdp:
            logger.warning(f"[CallSessionManager] CALL_ANSWER from {peer_id} has no pending offer")
            return

        if message.renegotiate or self.state == CallState.ACTIVE:
            try:
                await entry.apply_remote_description(description_from_json(message.sdp, "answer"))
                logger.info(f"[CallSessionManager] Renegotiation answer applied for {peer_id}")
            except Exception as e:
                self._report(NegotiationError(f"Renegotiation answer from {peer_id} failed: {e}"))
            return

        generation = self._generation
        try:
            answer = description_from_json(message.sdp, "answer")
            await entry.apply_remote_description(answer)
        except Exception as e:
            if generation != self._generation:
                return
            error = e if isinstance(e, CallCoreError) else NegotiationError(str(e))
            logger.error(f"[CallSessionManager] Failed to apply answer from {peer_id}: {error}")
            try:
                await self.sender.send(
                    SignalingMessageType.CALL_END,
                    peer_id,
                    self.session.room_id,
                    {"reason": EndReason.ERROR},
                )
            finally:
                await self.cleanup(EndReason.ERROR)
            self._report(error)
            return

        if generation == self._generation and self.state == CallState.OUTGOING:
            self._stop_ringtone()
            self._set_state(CallState.CONNECTING)

    async def handle_ice_candidate(self, message: SignalingMessage) -> None:
        """ICE_CANDIDATE 수신 (원격 SDP 전이면 큐에 보관)"""
        peer_id = message.sender
        if not peer_id or not message.candidate:
            return

        if self.state != CallState.IDLE and peer_id != self.session.peer_id:
            logger.debug(f"[CallSessionManager] Ignoring candidate from non-peer {peer_id}")
            return

        entry = self.peers.get_or_create(peer_id)
        try:
            await entry.add_remote_candidate(message.candidate)
        except NegotiationError as e:
            logger.warning(f"[CallSessionManager] Bad candidate from {peer_id}: {e}")
            self._report(e)

    async def handle_reject(self, message: SignalingMessage) -> None:
        """CALL_REJECT 수신"""
        await self._handle_remote_termination(message, EndReason.REJECTED)

    async def handle_end(self, message: SignalingMessage) -> None:
        """CALL_END 수신"""
        await self._handle_remote_termination(message, message.reason or EndReason.HANGUP)

    async def handle_busy(self, message: SignalingMessage) -> None:
        """CALL_BUSY 수신"""
        await self._handle_remote_termination(message, EndReason.BUSY)

    # ===== 내부 =====

    async def _handle_remote_termination(self, message: SignalingMessage, reason: str) -> None:
        if self.state == CallState.IDLE:
            return
        if message.sender != self.session.peer_id:
            logger.warning(
                f"[CallSessionManager] Ignoring {message.type} from {message.sender}, "
                f"current peer is {self.session.peer_id}"
            )
            return

        logger.info(f"[CallSessionManager] {message.type} from {message.sender} (reason={reason})")
        await self.cleanup(reason)

    async def _handle_renegotiation_offer(self, message: SignalingMessage) -> None:
        """active 상태에서 재협상 offer 처리 (상태 전이 없음)"""
        peer_id = message.sender
        entry = self.entry
        try:
            offer = description_from_json(message.sdp, "offer")
            await entry.apply_remote_description(offer)
            answer = await entry.create_answer(self.settings.video_max_bitrate)
        except Exception as e:
            self._report(NegotiationError(f"Renegotiation offer from {peer_id} failed: {e}"))
            return

        if MediaKind.parse(message.call_type) == MediaKind.VIDEO:
            self.session.media_kind = MediaKind.VIDEO

        logger.info(f"[CallSessionManager] Answering renegotiation from {peer_id}")
        await self.sender.send(
            SignalingMessageType.CALL_ANSWER,
            peer_id,
            self.session.room_id,
            {"sdp": description_to_json(answer), "renegotiate": True},
        )

    async def _on_track(self, entry: PeerConnectionEntry, track) -> None:
        if self.entry is not entry:
            return
        self.session.remote_stream = entry.remote_stream
        notify(self.listener, "on_remote_stream", entry.remote_stream)

    async def _on_connection_state(self, entry: PeerConnectionEntry, state: str) -> None:
        if self.entry is not entry:
            return

        if state == ConnectionStateName.CONNECTED:
            if self.state == CallState.OUTGOING:
                self._set_state(CallState.CONNECTING)
            if self.state == CallState.CONNECTING:
                self._activate()
        elif state in ConnectionStateName.TERMINAL_STATES and self.state != CallState.IDLE:
            error = PeerUnreachable(entry.peer_id, state)
            logger.warning(f"[CallSessionManager] {error}")
            await self.cleanup(EndReason.ICE_FAILED)
            self._report(error)

    def _activate(self) -> None:
        self._cancel_timer("_outgoing_timer")
        self._stop_ringtone()
        self.session.started_at = self.scheduler.now()
        self._set_state(CallState.ACTIVE)
        self._duration_timer = self.scheduler.call_later(1.0, self._tick_duration)
        logger.info(f"[CallSessionManager] Call with {self.session.peer_id} is active")

    def _tick_duration(self) -> None:
        if self.state != CallState.ACTIVE:
            return
        notify(self.listener, "on_duration", self.duration)
        self._duration_timer = self.scheduler.call_later(1.0, self._tick_duration)

    async def _on_outgoing_timeout(self) -> None:
        if self.state not in (CallState.OUTGOING, CallState.CONNECTING):
            return

        peer_id = self.session.peer_id
        logger.info(f"[CallSessionManager] No answer from {peer_id}, giving up")
        try:
            await self.sender.send(
                SignalingMessageType.CALL_END,
                peer_id,
                self.session.room_id,
                {"reason": EndReason.TIMEOUT},
            )
        finally:
            await self.cleanup(EndReason.TIMEOUT)

    async def _abort_setup(self, generation: int, error: Exception, notify_peer: bool = False) -> None:
        """설정 단계 실패: cleanup 후 타입이 있는 에러로 재전파"""
        if generation != self._generation:
            raise SessionAborted("Call was cleaned up during setup") from error

        peer_id = self.session.peer_id
        logger.error(f"[CallSessionManager] Call setup with {peer_id} failed: {error}")
        try:
            if notify_peer and peer_id:
                await self.sender.send(
                    SignalingMessageType.CALL_END,
                    peer_id,
                    self.session.room_id,
                    {"reason": EndReason.ERROR},
                )
        finally:
            await self.cleanup(EndReason.ERROR)

        if isinstance(error, CallCoreError):
            raise error
        raise NegotiationError(f"Call setup failed: {error}") from error

    async def _discard_stale_entries(self, keep: str | None) -> None:
        """idle 중 쌓인 다른 피어의 candidate 엔트리 정리"""
        for peer_id in self.peers.peer_ids:
            if peer_id != keep:
                await self.peers.remove(peer_id)

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise SessionAborted("Call was cleaned up during setup")

    def _set_state(self, state: CallState) -> None:
        if self.session.state == state:
            return
        logger.info(f"[CallSessionManager] State: {self.session.state.value} -> {state.value}")
        self.session.state = state
        notify(self.listener, "on_state_changed", state)

    def _start_ringtone(self, outgoing: bool) -> None:
        self._ringing = True
        notify(self.listener, "on_ringtone_start", outgoing)

    def _stop_ringtone(self) -> None:
        if self._ringing:
            self._ringing = False
            notify(self.listener, "on_ringtone_stop")

    def _cancel_timer(self, name: str) -> None:
        handle = getattr(self, name)
        if handle is not None:
            handle.cancel()
            setattr(self, name, None)

    def _report(self, error: Exception) -> None:
        notify(self.listener, "on_error", error)
