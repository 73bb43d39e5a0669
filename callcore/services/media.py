"""로컬/원격 미디어 스트림 및 장치 획득"""

import asyncio
import logging
import uuid
from typing import Protocol

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from callcore.core.config import Settings, get_settings
from callcore.core.exceptions import MediaError, MediaErrorKind
from callcore.schemas.session import MediaKind

logger = logging.getLogger(__name__)


def _silence(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def _black(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    y, u, v = black.planes
    y.update(bytes(y.buffer_size))
    u.update(b"\x80" * u.buffer_size)
    v.update(b"\x80" * v.buffer_size)
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """enabled=False일 때 무음/검은 화면을 내보내는 트랙 래퍼 (음소거, 비디오 일시정지)"""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _black(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class LocalMediaStream:
    """로컬 카메라/마이크 스트림 (세션이 단독 소유)"""

    def __init__(self, tracks: list[ToggleableTrack] | None = None):
        self.id = str(uuid.uuid4())
        self.tracks: list[ToggleableTrack] = list(tracks or [])

    @property
    def audio_tracks(self) -> list[ToggleableTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> list[ToggleableTrack]:
        return [t for t in self.tracks if t.kind == "video"]

    def add_track(self, track: ToggleableTrack) -> None:
        self.tracks.append(track)

    def set_audio_enabled(self, enabled: bool) -> None:
        for track in self.audio_tracks:
            track.enabled = enabled

    def set_video_enabled(self, enabled: bool) -> None:
        for track in self.video_tracks:
            track.enabled = enabled

    def stop(self) -> None:
        """모든 트랙 정지 (장치 해제)"""
        for track in self.tracks:
            track.stop()


class RemoteMediaStream:
    """원격 피어 트랙 묶음 (재협상 중에도 같은 객체 유지)"""

    def __init__(self, peer_id: str):
        self.id = str(uuid.uuid4())
        self.peer_id = peer_id
        self.tracks: list[MediaStreamTrack] = []

    @property
    def has_video(self) -> bool:
        return any(t.kind == "video" for t in self.tracks)

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)


class MediaAcquisition(Protocol):
    """OS에 카메라/마이크 스트림 요청 (권한 필요, 실패 가능)"""

    async def acquire(self, kind: MediaKind) -> LocalMediaStream:
        """오디오(+비디오) 스트림 획득

        Raises:
            MediaError: 권한 거부 / 장치 없음 / 장치 사용 중
        """
        ...

    async def acquire_video(self) -> ToggleableTrack:
        """통화 중 비디오 추가용 비디오 트랙 획득"""
        ...


class DeviceMediaAcquisition:
    """PyAV/FFmpeg 캡처 장치 기반 미디어 획득 (aiortc MediaPlayer)"""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def _open(self, file: str, format: str, options: dict[str, str] | None = None) -> MediaPlayer:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: MediaPlayer(file, format=format, options=options or {})
            )
        except PermissionError as e:
            raise MediaError(MediaErrorKind.DENIED, f"Permission denied for {file}") from e
        except FileNotFoundError as e:
            raise MediaError(MediaErrorKind.NOT_FOUND, f"No capture device at {file}") from e
        except (OSError, FFmpegError) as e:
            raise MediaError(MediaErrorKind.DEVICE_BUSY, f"Cannot open {file}: {e}") from e

    async def _audio_track(self) -> ToggleableTrack:
        player = await self._open(self.settings.audio_device, self.settings.audio_format)
        if player.audio is None:
            raise MediaError(MediaErrorKind.NOT_FOUND, f"No audio in {self.settings.audio_device}")
        return ToggleableTrack(player.audio)

    async def acquire_video(self) -> ToggleableTrack:
        options = {
            "video_size": self.settings.video_size,
            "framerate": str(self.settings.video_framerate),
        }
        player = await self._open(self.settings.video_device, self.settings.video_format, options)
        if player.video is None:
            raise MediaError(MediaErrorKind.NOT_FOUND, f"No video in {self.settings.video_device}")
        return ToggleableTrack(player.video)

    async def acquire(self, kind: MediaKind) -> LocalMediaStream:
        stream = LocalMediaStream([await self._audio_track()])
        if kind == MediaKind.VIDEO:
            try:
                stream.add_track(await self.acquire_video())
            except MediaError:
                stream.stop()
                raise
        logger.info(f"[DeviceMediaAcquisition] Acquired {kind.value} stream {stream.id}")
        return stream
