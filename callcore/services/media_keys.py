"""컨퍼런스 미디어 키 관리 (피어별 키 등록, 퇴장 시 키 교체)"""

import base64
import logging
import secrets
from typing import Protocol

logger = logging.getLogger(__name__)

MEDIA_KEY_BYTES = 32


class MediaKeyProvider(Protocol):
    def current_key(self) -> str: ...

    def rotate(self) -> str: ...

    def set_peer_key(self, peer_id: str, key: str) -> None: ...

    def remove_peer_key(self, peer_id: str) -> None: ...

    def destroy(self) -> None: ...


class MediaKeyRing:
    """세션 단위 미디어 키 보관소

    실제 프레임 암호화는 호스트가 peer_key()로 키를 꺼내 적용한다.
    """

    def __init__(self):
        self._key = self._generate()
        self._peer_keys: dict[str, str] = {}

    @staticmethod
    def _generate() -> str:
        return base64.b64encode(secrets.token_bytes(MEDIA_KEY_BYTES)).decode("ascii")

    def current_key(self) -> str:
        return self._key

    def rotate(self) -> str:
        self._key = self._generate()
        logger.info("[MediaKeyRing] Media key rotated")
        return self._key

    def set_peer_key(self, peer_id: str, key: str) -> None:
        self._peer_keys[peer_id] = key

    def peer_key(self, peer_id: str) -> str | None:
        return self._peer_keys.get(peer_id)

    def remove_peer_key(self, peer_id: str) -> None:
        self._peer_keys.pop(peer_id, None)

    def destroy(self) -> None:
        self._peer_keys.clear()
        self._key = ""
