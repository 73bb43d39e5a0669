"""타이머 스케줄러

세션 매니저는 시계와 타이머를 직접 만지지 않고 Scheduler를 통해서만 사용한다.
테스트에서는 가짜 스케줄러로 시간을 수동으로 진행시킨다.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """시계 + 지연 실행"""

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...


class LoopScheduler:
    """asyncio 이벤트 루프 기반 스케줄러

    콜백이 코루틴 함수면 태스크로 실행한다.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop
        self._tasks: set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self.loop.call_later(delay, self._run, callback)

    def _run(self, callback: Callable[[], Any]) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("[LoopScheduler] Timer callback failed")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "[LoopScheduler] Timer task failed",
                exc_info=task.exception(),
            )
