"""피어 연결 엔트리 및 ICE candidate 큐

1:1 통화와 풀메시 컨퍼런스가 공유하는 피어별 연결 관리.
원격 SDP가 설정되기 전에 도착한 candidate는 큐에 보관했다가
setRemoteDescription 직후 도착 순서대로 적용한다.
"""

import logging
from typing import Any, Awaitable, Callable, Iterator

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription

from callcore.core.exceptions import InvalidStateError
from callcore.services.ice_config_provider import IceConfigProvider
from callcore.services.media import LocalMediaStream, RemoteMediaStream
from callcore.utils.ice_parser import ICECandidateParser
from callcore.utils.sdp import apply_bitrate_cap

logger = logging.getLogger(__name__)

TrackCallback = Callable[["PeerConnectionEntry", Any], Awaitable[None]]
StateCallback = Callable[["PeerConnectionEntry", str], Awaitable[None]]
ConnectionFactory = Callable[[], Awaitable[RTCPeerConnection]]


class PeerConnectionFactory:
    """ICE 설정을 반영한 RTCPeerConnection 생성기"""

    def __init__(self, ice_provider: IceConfigProvider):
        self.ice_provider = ice_provider

    async def __call__(self) -> RTCPeerConnection:
        config = await self.ice_provider.get_rtc_configuration()
        logger.info(
            f"[PeerConnectionFactory] Creating RTCPeerConnection with {len(config.iceServers)} ICE servers"
        )
        return RTCPeerConnection(configuration=config)


class PeerConnectionEntry:
    """피어 한 명에 대한 연결 + 대기 candidate 큐 + 원격 스트림"""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.connection: RTCPeerConnection | None = None
        self.pending_candidates: list[RTCIceCandidate] = []
        self.remote_stream: RemoteMediaStream | None = None
        self.connected = False
        self.closed = False

    def __repr__(self) -> str:
        return (
            f"PeerConnectionEntry(peer_id={self.peer_id!r}, "
            f"pending={len(self.pending_candidates)}, closed={self.closed})"
        )

    @property
    def has_remote_description(self) -> bool:
        return self.connection is not None and self.connection.remoteDescription is not None

    @property
    def connection_state(self) -> str | None:
        return self.connection.connectionState if self.connection is not None else None

    def attach(
        self,
        connection: RTCPeerConnection,
        on_track: TrackCallback | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """연결 객체를 붙이고 이벤트 핸들러 등록

        Args:
            connection: RTCPeerConnection (또는 동일 인터페이스)
            on_track: 원격 트랙 수신 콜백
            on_state_change: connectionState 변경 콜백
        """
        if self.connection is not None:
            raise InvalidStateError(f"Peer {self.peer_id} already has a connection")
        self.connection = connection

        @connection.on("track")
        async def on_remote_track(track):
            if self.closed:
                return
            logger.info(f"[PeerConnectionEntry] {track.kind} track received from {self.peer_id}")
            if self.remote_stream is None:
                self.remote_stream = RemoteMediaStream(self.peer_id)
            self.remote_stream.add_track(track)
            if on_track is not None:
                await on_track(self, track)

        @connection.on("connectionstatechange")
        async def on_connection_state_change():
            state = connection.connectionState
            logger.info(f"[PeerConnectionEntry] Connection state: {state} for {self.peer_id}")
            if self.closed:
                return
            if state == "connected":
                self.connected = True
            if on_state_change is not None:
                await on_state_change(self, state)

    async def add_remote_candidate(self, raw: str | dict) -> bool:
        """원격 ICE candidate 추가

        원격 SDP가 있으면 즉시 적용, 없으면 큐에 보관한다.

        Args:
            raw: 와이어 candidate (JSON 문자열 또는 딕셔너리)

        Returns:
            즉시 적용 여부 (큐잉/무시면 False)

        Raises:
            NegotiationError: candidate 형식 오류
        """
        payload = ICECandidateParser.load(raw)
        if payload is None:
            logger.debug(f"[PeerConnectionEntry] Empty candidate (end-of-candidates) from {self.peer_id}")
            return False

        candidate = ICECandidateParser.parse(payload)
        if not self.has_remote_description:
            self.pending_candidates.append(candidate)
            logger.debug(
                f"[PeerConnectionEntry] Queued ICE candidate for {self.peer_id} "
                f"({len(self.pending_candidates)} pending)"
            )
            return False

        await self._apply_candidate(candidate)
        return True

    async def apply_remote_description(self, description: RTCSessionDescription) -> None:
        """원격 SDP 설정 후 대기 중인 candidate를 도착 순서대로 적용하고 큐를 비움"""
        if self.connection is None:
            raise InvalidStateError(f"Peer {self.peer_id} has no connection")

        await self.connection.setRemoteDescription(description)

        queued, self.pending_candidates = self.pending_candidates, []
        if queued:
            logger.info(f"[PeerConnectionEntry] Flushing {len(queued)} queued candidates for {self.peer_id}")
        for candidate in queued:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: RTCIceCandidate) -> None:
        try:
            await self.connection.addIceCandidate(candidate)
            logger.debug(f"[PeerConnectionEntry] Added ICE candidate for {self.peer_id}")
        except Exception as e:
            logger.warning(f"[PeerConnectionEntry] Failed to add ICE candidate for {self.peer_id}: {e}")

    async def create_offer(self, max_video_bitrate: int = 0) -> RTCSessionDescription:
        """offer 생성 및 로컬 SDP 설정

        aiortc는 setLocalDescription에서 ICE 수집을 마치므로
        반환되는 SDP에 로컬 candidate가 포함된다.
        """
        offer = await self.connection.createOffer()
        await self.connection.setLocalDescription(offer)
        return self._local_description(max_video_bitrate)

    async def create_answer(self, max_video_bitrate: int = 0) -> RTCSessionDescription:
        """answer 생성 및 로컬 SDP 설정"""
        answer = await self.connection.createAnswer()
        await self.connection.setLocalDescription(answer)
        return self._local_description(max_video_bitrate)

    def _local_description(self, max_video_bitrate: int) -> RTCSessionDescription:
        local = self.connection.localDescription
        return RTCSessionDescription(sdp=apply_bitrate_cap(local.sdp, max_video_bitrate), type=local.type)

    def add_local_stream(self, stream: LocalMediaStream) -> None:
        for track in stream.tracks:
            self.connection.addTrack(track)

    def add_track(self, track) -> None:
        self.connection.addTrack(track)

    async def close(self) -> None:
        """연결 종료 (중복 호출 안전)"""
        if self.closed:
            return
        self.closed = True
        self.pending_candidates.clear()
        if self.connection is not None:
            await self.connection.close()
            logger.info(f"[PeerConnectionEntry] Closed connection for {self.peer_id}")


class PeerRegistry:
    """피어 ID → PeerConnectionEntry 소유 컬렉션

    엔트리 생성/삭제는 이 클래스를 통해서만 일어난다.
    """

    def __init__(self, connection_factory: ConnectionFactory):
        self.connection_factory = connection_factory
        self._entries: dict[str, PeerConnectionEntry] = {}

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PeerConnectionEntry]:
        return iter(list(self._entries.values()))

    @property
    def peer_ids(self) -> list[str]:
        return list(self._entries)

    def get(self, peer_id: str) -> PeerConnectionEntry | None:
        return self._entries.get(peer_id)

    def get_or_create(self, peer_id: str) -> PeerConnectionEntry:
        """엔트리 조회, 없으면 연결 없는 엔트리 생성 (candidate 선도착 대비)"""
        entry = self._entries.get(peer_id)
        if entry is None:
            entry = PeerConnectionEntry(peer_id)
            self._entries[peer_id] = entry
        return entry

    async def open(
        self,
        peer_id: str,
        on_track: TrackCallback | None = None,
        on_state_change: StateCallback | None = None,
    ) -> PeerConnectionEntry:
        """연결이 붙은 엔트리 반환 (필요 시 연결 생성)

        연결 없이 큐만 있던 엔트리는 그 큐를 유지한 채 연결을 붙인다.
        """
        entry = self.get_or_create(peer_id)
        if entry.connection is None:
            connection = await self.connection_factory()
            if self._entries.get(peer_id) is not entry or entry.closed:
                # 연결 생성 중에 엔트리가 제거됨
                await connection.close()
                raise InvalidStateError(f"Peer {peer_id} was removed while connecting")
            entry.attach(connection, on_track=on_track, on_state_change=on_state_change)
        return entry

    async def remove(self, peer_id: str) -> PeerConnectionEntry | None:
        """엔트리 제거 및 연결 종료"""
        entry = self._entries.pop(peer_id, None)
        if entry is not None:
            await entry.close()
        return entry

    async def close_all(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await entry.close()
