"""Progress monitoring for long-running backend operations.

Loading a city's dataset is fire-and-forget on the backend: ``POST
/api/city/{name}/load`` hands back an operation id and the work is reported
over a server-sent event stream. This module turns that stream into a small
state machine: PENDING until the first frame, IN_PROGRESS while frames
arrive, then COMPLETE or FAILED.

Only one terminal transition ever happens per operation. Keepalive frames are
dropped, malformed frames are logged and skipped, and a transport failure maps
to FAILED without retrying.
"""

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, AsyncIterator, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from ..config import get_settings
from .backend import BackendClient, BackendError, CityNotLoaded, get_backend

log = logging.getLogger(__name__)

COMPLETE_MESSAGE = "Complete!"
CONNECTION_ERROR = "Connection error"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressFrame(BaseModel):
    message: str = ""
    progress: Optional[float] = Field(default=None, ge=0, le=100)
    complete: bool = False
    error: bool = False
    keepalive: bool = False
    data: Any = None
    timestamp: str = Field(default_factory=_now_iso)


class OperationState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = (OperationState.COMPLETE, OperationState.FAILED)


class FrameOutcome(str, Enum):
    PROGRESS = "progress"
    KEEPALIVE = "keepalive"
    COMPLETE = "complete"
    FAILED = "failed"
    IGNORED = "ignored"


def parse_frame(raw: str) -> Optional[ProgressFrame]:
    try:
        return ProgressFrame.model_validate_json(raw)
    except ValidationError as exc:
        log.warning("Skipping malformed progress frame %r: %s", raw[:200], exc.errors()[:1])
        return None


@dataclass
class Operation:
    operation_id: str
    city: Optional[str] = None
    state: OperationState = OperationState.PENDING
    events: list[ProgressFrame] = field(default_factory=list)
    progress: float = 0
    result: Any = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def apply(self, frame: ProgressFrame) -> FrameOutcome:
        if self.terminal:
            return FrameOutcome.IGNORED
        if frame.keepalive:
            return FrameOutcome.KEEPALIVE
        if frame.error:
            self.fail(frame.message)
            return FrameOutcome.FAILED
        if frame.complete:
            self.state = OperationState.COMPLETE
            self.progress = 100
            self.result = frame.data
            self.events.append(ProgressFrame(message=COMPLETE_MESSAGE, complete=True, progress=100))
            return FrameOutcome.COMPLETE
        self.state = OperationState.IN_PROGRESS
        if frame.progress is not None:
            self.progress = frame.progress
        self.events.append(frame)
        return FrameOutcome.PROGRESS

    def fail(self, message: str) -> bool:
        """Move to FAILED; returns False if already terminal."""
        if self.terminal:
            return False
        self.state = OperationState.FAILED
        self.error = message
        self.events.append(ProgressFrame(message=f"Error: {message}", error=True))
        return True

    def to_dict(self):
        return {
            "operationId": self.operation_id,
            "city": self.city,
            "state": self.state.value,
            "progress": self.progress,
            "error": self.error,
            "events": [e.model_dump() for e in self.events],
        }


async def _notify(callback: Optional[Callable], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """Cancellable handle on one operation's progress stream.

    Exactly one of ``on_complete``/``on_error`` fires, after zero or more
    ``on_progress`` calls, unless ``cancel()`` gets there first. The stream is
    closed before the terminal callback runs.
    """

    def __init__(
        self,
        operation: Operation,
        frames: AsyncIterator[str],
        on_progress: Optional[Callable] = None,
        on_complete: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
    ):
        self.operation = operation
        self._frames = frames
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._on_error = on_error
        self._closed = False
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> "Subscription":
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        await asyncio.wait([self._task])
        if not self._task.cancelled():
            self._task.result()

    async def _callback(self, callback: Optional[Callable], *args) -> None:
        try:
            await _notify(callback, *args)
        except Exception:
            log.exception("Callback failed for operation %s", self.operation.operation_id)

    async def _consume(self) -> None:
        op = self.operation
        try:
            async with aclosing(self._frames) as frames:
                async for raw in frames:
                    if self._closed:
                        break
                    frame = parse_frame(raw)
                    if frame is None:
                        continue
                    outcome = op.apply(frame)
                    if outcome is FrameOutcome.PROGRESS:
                        await self._callback(self._on_progress, frame)
                    elif outcome in (FrameOutcome.COMPLETE, FrameOutcome.FAILED):
                        self._closed = True
                        break
        except BackendError as exc:
            log.warning("Progress stream for %s failed: %s", op.operation_id, exc.message)
            op.fail(CONNECTION_ERROR)
        finally:
            self._closed = True
        if not op.terminal and not self._cancelled:
            log.warning("Progress stream for %s ended without a result", op.operation_id)
            op.fail(CONNECTION_ERROR)

    async def _run(self) -> None:
        await self._consume()
        if self._cancelled:
            return
        op = self.operation
        if op.state is OperationState.COMPLETE:
            log.info("Operation %s complete", op.operation_id)
            await self._callback(self._on_complete, op.result)
        elif op.state is OperationState.FAILED:
            log.info("Operation %s failed: %s", op.operation_id, op.error)
            await self._callback(self._on_error, op.error)


class OperationMonitor:
    def __init__(self, backend: BackendClient, grace_seconds: Optional[float] = None):
        self.backend = backend
        if grace_seconds is None:
            grace_seconds = get_settings().completion_grace_seconds
        self.grace_seconds = grace_seconds

    async def start(self, city: str) -> str:
        operation_id = await self.backend.load_city_data(city)
        log.info("Started loading %s (operation %s)", city, operation_id)
        return operation_id

    def subscribe(
        self,
        operation_id: str,
        on_progress: Optional[Callable] = None,
        on_complete: Optional[Callable] = None,
        on_error: Optional[Callable] = None,
        city: Optional[str] = None,
    ) -> Subscription:
        """Attach to an operation's stream. Must be called from a running loop."""
        operation = Operation(operation_id, city=city)
        frames = self.backend.stream_progress(operation_id)
        return Subscription(operation, frames, on_progress, on_complete, on_error).start()

    async def follow(self, operation_id: str, city: str, on_event: Optional[Callable] = None) -> Operation:
        """Drive an operation to its end, then fetch the finished dataset.

        ``on_event`` sees every entry appended to the operation's log,
        including the synthetic completion/error entries.
        """
        sub: Optional[Subscription] = None

        async def completed(_data):
            op = sub.operation
            await _notify(on_event, op.events[-1])
            # give the UI a moment to show the completed state
            await asyncio.sleep(self.grace_seconds)
            try:
                op.result = await self.backend.get_city_data(city)
            except BackendError as exc:
                log.error("Fetching %s after load failed: %s", city, exc.message)
                op.result = None
                op.error = exc.message

        async def failed(_message):
            await _notify(on_event, sub.operation.events[-1])

        sub = self.subscribe(operation_id, on_event, completed, failed, city=city)
        try:
            await sub.wait()
        finally:
            sub.cancel()
        return sub.operation

    async def ensure_city_data(self, city: str, on_event: Optional[Callable] = None) -> dict:
        """Fetch a city's data, generating it first if the backend asks us to."""
        try:
            return await self.backend.get_city_data(city)
        except CityNotLoaded:
            log.info("%s is not loaded yet; starting load", city)
        operation_id = await self.start(city)
        op = await self.follow(operation_id, city, on_event)
        if op.state is OperationState.FAILED or op.result is None:
            raise BackendError(op.error or "City data unavailable")
        return op.result


@lru_cache(maxsize=1)
def get_monitor() -> OperationMonitor:
    return OperationMonitor(get_backend())
