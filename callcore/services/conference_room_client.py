"""컨퍼런스 룸 REST 클라이언트"""

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from callcore.core.config import Settings, get_settings
from callcore.core.exceptions import RoomFull, RoomServiceError
from callcore.schemas.signaling import ConferenceInfo

logger = logging.getLogger(__name__)


class ConferenceRoomClient:
    """컨퍼런스 룸 관리 서비스 클라이언트

    - POST {conference_path}: 룸 생성
    - POST {conference_path}/{confId}/join: 참여 (409 = 정원 초과)
    - POST {conference_path}/{confId}/leave: 퇴장
    - GET {conference_path}/{confId}: 조회
    """

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        """HTTP 클라이언트 초기화"""
        if self._client is not None:
            return

        headers = {"Content-Type": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"

        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=httpx.Timeout(self.settings.http_timeout),
            headers=headers,
        )
        self._owns_client = True
        logger.info(f"[ConferenceRoomClient] Connected: {self.settings.api_base_url}")

    async def disconnect(self) -> None:
        """HTTP 클라이언트 종료"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> httpx.Response:
        if self._client is None:
            await self.connect()

        try:
            return await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise RoomServiceError(f"Conference service unreachable: {e}") from e

    def _parse_info(self, response: httpx.Response) -> ConferenceInfo:
        try:
            info = ConferenceInfo.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RoomServiceError(f"Invalid conference response: {e}", response.status_code) from e

        cap = min(info.max_participants, self.settings.max_participants)
        if info.count > cap:
            raise RoomFull(f"Conference {info.conf_id} is full ({info.count}/{cap})")
        return info

    def _raise_for_status(self, response: httpx.Response, conf_id: str | None = None) -> None:
        if response.status_code == 409:
            raise RoomFull(f"Conference {conf_id} is full")
        if response.status_code == 404:
            raise RoomServiceError(f"Conference {conf_id} not found", 404)
        if response.is_error:
            raise RoomServiceError(
                f"Conference service error: {response.status_code} - {response.text}",
                response.status_code,
            )

    async def create_conference(self, room_id: str | None = None) -> ConferenceInfo:
        """룸 생성

        Args:
            room_id: 연결할 채팅방 ID (선택)

        Returns:
            생성된 컨퍼런스 정보
        """
        body = {"roomId": room_id} if room_id else None
        response = await self._request("POST", self.settings.conference_path, json=body)
        self._raise_for_status(response)
        info = self._parse_info(response)
        logger.info(f"[ConferenceRoomClient] Created conference {info.conf_id}")
        return info

    async def join_conference(self, conf_id: str) -> ConferenceInfo:
        """기존 룸 참여

        Raises:
            RoomFull: 정원 초과 (HTTP 409 또는 응답 인원이 상한 초과)
            RoomServiceError: 룸 없음 또는 기타 실패
        """
        response = await self._request("POST", f"{self.settings.conference_path}/{conf_id}/join")
        self._raise_for_status(response, conf_id)
        info = self._parse_info(response)
        logger.info(f"[ConferenceRoomClient] Joined conference {conf_id} ({info.count} participants)")
        return info

    async def leave_conference(self, conf_id: str) -> None:
        """룸 퇴장"""
        response = await self._request("POST", f"{self.settings.conference_path}/{conf_id}/leave")
        self._raise_for_status(response, conf_id)
        logger.info(f"[ConferenceRoomClient] Left conference {conf_id}")

    async def get_conference(self, conf_id: str) -> ConferenceInfo:
        """룸 정보 조회"""
        response = await self._request("GET", f"{self.settings.conference_path}/{conf_id}")
        self._raise_for_status(response, conf_id)
        return ConferenceInfo.model_validate(response.json())

    async def get_conference_by_room(self, room_id: str) -> ConferenceInfo | None:
        """채팅방에 연결된 진행 중 컨퍼런스 조회 (없으면 None)"""
        response = await self._request("GET", f"{self.settings.conference_path}/room/{room_id}")
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return ConferenceInfo.model_validate(response.json())
