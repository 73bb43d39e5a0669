"""ICE 서버 설정 조회 및 캐시"""

import copy
import logging
import time
from typing import Callable

import httpx
from aiortc import RTCConfiguration, RTCIceServer
from pydantic import ValidationError

from callcore.core.config import Settings, get_settings
from callcore.core.telemetry import get_call_metrics
from callcore.core.webrtc_config import FALLBACK_ICE_SERVERS
from callcore.schemas.signaling import IceConfig, IceServer

logger = logging.getLogger(__name__)


class IceConfigProvider:
    """ICE 서버(STUN/TURN + 임시 자격증명) 목록 제공

    백엔드 응답을 TTL(기본 1시간) 동안 캐시한다.
    조회 실패 시 공개 STUN 폴백을 반환하며 폴백은 캐시하지 않는다.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            settings: 설정 (None이면 get_settings())
            client: 주입할 HTTP 클라이언트 (테스트용)
            clock: 캐시 만료 판단용 시계
        """
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cached: list[IceServer] | None = None
        self._cached_at: float = 0.0

    async def connect(self) -> None:
        """HTTP 클라이언트 초기화"""
        if self._client is not None:
            return

        headers = {"Accept": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"

        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=httpx.Timeout(self.settings.http_timeout),
            headers=headers,
        )
        self._owns_client = True

    async def disconnect(self) -> None:
        """HTTP 클라이언트 종료"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def invalidate(self) -> None:
        """캐시 제거 (다음 호출에서 재조회)"""
        self._cached = None
        self._cached_at = 0.0

    def _cache_valid(self) -> bool:
        if self._cached is None:
            return False
        return self._clock() - self._cached_at < self.settings.ice_config_ttl

    async def get_ice_servers(self) -> list[IceServer]:
        """ICE 서버 목록 반환 (캐시 우선)

        Returns:
            IceServer 목록 (조회 실패 시 공개 STUN 폴백)
        """
        if self._cache_valid():
            return list(self._cached)

        if self._client is None:
            await self.connect()

        try:
            response = await self._client.get(self.settings.ice_config_path)
            response.raise_for_status()
            config = IceConfig.model_validate(response.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(f"[IceConfigProvider] Failed to fetch ICE config, using fallback: {e}")
            return self._fallback("fetch_failed")

        if not config.ice_servers:
            logger.warning("[IceConfigProvider] Empty ICE server list, using fallback")
            return self._fallback("empty")

        self._cached = config.ice_servers
        self._cached_at = self._clock()
        logger.info(f"[IceConfigProvider] Cached {len(config.ice_servers)} ICE servers")
        return list(self._cached)

    def _fallback(self, cause: str) -> list[IceServer]:
        """공개 STUN 폴백 (캐시하지 않음)"""
        metrics = get_call_metrics()
        if metrics:
            metrics.ice_config_fallback_total.add(1, {"cause": cause})
        return [IceServer.model_validate(s) for s in copy.deepcopy(FALLBACK_ICE_SERVERS)]

    async def get_rtc_configuration(self) -> RTCConfiguration:
        """aiortc RTCConfiguration 생성"""
        servers = await self.get_ice_servers()
        ice_servers = [
            RTCIceServer(
                urls=server.url_list,
                username=server.username,
                credential=server.credential,
            )
            for server in servers
        ]
        return RTCConfiguration(iceServers=ice_servers)
