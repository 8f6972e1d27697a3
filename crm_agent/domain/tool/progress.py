from typing import Dict, Any, List, Optional, AsyncIterator
import asyncio
from enum import Enum

from pydantic import BaseModel


class ProgressStage(str, Enum):
    """Stages reported by long-running tools"""
    LOADING = "loading"
    FETCHING_DATA = "fetching_data"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STAGES = frozenset({ProgressStage.COMPLETE, ProgressStage.ERROR})


class ProgressUpdate(BaseModel):
    stage: ProgressStage
    message: str = ""
    result: Optional[Any] = None
    error: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


class ProgressChannel:
    """Bounded queue of progress updates; the oldest update is dropped when full"""

    def __init__(self, maxsize: int = 16):
        self._queue: "asyncio.Queue[ProgressUpdate]" = asyncio.Queue(maxsize=maxsize)
        self._last: Optional[ProgressUpdate] = None
        self.stages: List[ProgressStage] = []

    def publish(self, stage: ProgressStage, message: str = "", result: Any = None, error: Optional[str] = None) -> ProgressUpdate:
        update = ProgressUpdate(stage=stage, message=message, result=result, error=error)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(update)
        self._last = update
        self.stages.append(stage)
        return update

    def drain(self) -> Optional[ProgressUpdate]:
        """Empty the queue and keep the last value"""

        while not self._queue.empty():
            self._last = self._queue.get_nowait()
        return self._last

    async def updates(self) -> AsyncIterator[ProgressUpdate]:
        """Yield updates until a terminal stage arrives"""

        while True:
            update = await self._queue.get()
            yield update
            if update.is_terminal():
                return

    async def follow(self, task: "asyncio.Future[Any]") -> AsyncIterator[ProgressUpdate]:
        """Yield updates while `task` runs; ends at a terminal stage or once the task is done and the queue is empty"""

        while not (task.done() and self._queue.empty()):
            getter = asyncio.ensure_future(self._queue.get())
            try:
                await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter.cancelled() or not getter.done():
                continue
            update = getter.result()
            yield update
            if update.is_terminal():
                return

    @property
    def last(self) -> Optional[ProgressUpdate]:
        return self._last

    def summary(self) -> Dict[str, Any]:
        return {"stages": [stage.value for stage in self.stages]}
