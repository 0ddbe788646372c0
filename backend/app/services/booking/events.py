"""State-change events and the task bookkeeping shared by the three coordinators."""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime

from app.services.booking.errors import NotFoundError
from app.services.booking.state_machine import is_suspended, is_terminal
from app.services.booking.types import Clock, Failure, Workflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateEvent:
    """Pushed to listeners whenever a workflow object changes."""

    kind: str
    object_id: str
    state: str
    version: int
    at: datetime
    progress_message: str | None = None
    failure: Failure | None = None


Listener = Callable[[StateEvent], None]


class WorkflowHost:
    """Owns workflow objects and at most one in-flight task per object."""

    kind = "workflow"
    label = "Workflow"

    def __init__(self, clock: Clock):
        self._clock = clock
        self._items: dict[str, Workflow] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, workflow: Workflow, progress_message: str | None = None) -> None:
        event = StateEvent(
            kind=self.kind,
            object_id=workflow.id,
            state=workflow.state.value,
            version=workflow.version,
            at=self._clock(),
            progress_message=progress_message,
            failure=workflow.failure,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"{self.label} listener failed on {workflow.id}")

    def _add(self, workflow: Workflow) -> None:
        self._items[workflow.id] = workflow

    def _lookup(self, object_id: str) -> Workflow:
        workflow = self._items.get(object_id)
        if workflow is None:
            raise NotFoundError(f"{self.label} {object_id} does not exist")
        return workflow

    def all(self) -> list[Workflow]:
        return list(self._items.values())

    def _spawn(self, workflow: Workflow, coro: Coroutine) -> asyncio.Task:
        """Run the external round trip for a workflow that just entered a suspended state."""
        task = asyncio.create_task(coro, name=f"{self.kind}:{workflow.id}")
        self._tasks[workflow.id] = task

        def _done(t: asyncio.Task):
            if self._tasks.get(workflow.id) is t:
                del self._tasks[workflow.id]
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"{self.label} task for {workflow.id} crashed: {t.exception()!r}")

        task.add_done_callback(_done)
        return task

    def _detach(self, coro: Coroutine, what: str) -> None:
        """Fire-and-forget side effect; failures are logged, never surfaced."""
        task = asyncio.create_task(coro, name=what)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.warning(f"{what} failed: {t.exception()}")

        task.add_done_callback(_done)

    async def wait_idle(self, object_id: str) -> Workflow:
        """Wait for the object's in-flight round trip, then return it."""
        workflow = self._lookup(object_id)
        task = self._tasks.get(object_id)
        if task is not None:
            await asyncio.shield(task)
        return workflow

    async def drain(self) -> None:
        """Wait for detached side effects (audit writes) to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def forget(self, object_id: str) -> None:
        self._items.pop(object_id, None)

    def sweep_finished(self, older_than: datetime) -> int:
        """Drop terminal objects last touched before ``older_than``."""
        stale = [
            w.id for w in self._items.values()
            if is_terminal(w) and not is_suspended(w) and w.updated_at < older_than
        ]
        for object_id in stale:
            self.forget(object_id)
        return len(stale)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
