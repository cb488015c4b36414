"""Serial execution of queued operations: exactly one runs at a time.

State machine: Idle <-> Running, starting Idle. start_next() picks the
oldest queued operation, marks it running and hands its request to the
analyzer together with an OperationHooks object. When the analyzer returns
(or raises), the operation is marked done, the snapshot is saved and
start_next() is called again. That chaining is what drains the queue; there
is no poller.

All of this runs on the event loop thread, which is the only thread that
mutates the queue, so no locks are needed.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic.alias_generators import to_camel

from stardust.cache.artifacts import ArtifactCache, ArtifactDataError, blob_key, table_key
from stardust.executor.analyzer import Analyzer
from stardust.executor.errors import SchedulerInvariantError
from stardust.executor.notifier import Notifier
from stardust.executor.queue import OperationQueue
from stardust.executor.schemas import (
    PATCHABLE_PROGRESS_FIELDS,
    FunnelEntry,
    Operation,
    OperationState,
    PhaseType,
    Progress,
    unix_time_now,
)

logger = logging.getLogger(__name__)

# Raise on a double start instead of logging it (development / tests)
STRICT_INVARIANTS = os.environ.get("STRICT_INVARIANTS", "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class OutputPolicy:
    """How the output of one phase is stored."""
    tabular: bool
    blob_kind: str = ""


# Phases not listed here are not stored
OUTPUT_POLICIES: dict[PhaseType, OutputPolicy] = {
    PhaseType.TOPICS_STATS: OutputPolicy(tabular=False, blob_kind="topics"),
    PhaseType.STATS: OutputPolicy(tabular=True),
}

# camelCase alias -> attribute, so analyzers may use either spelling
_PROGRESS_ALIASES = {to_camel(name): name for name in Progress.model_fields}


class OperationHooks:
    """The AnalysisHooks handed to the analyzer for one operation.

    Calls arriving after the operation finished are ignored.
    """

    def __init__(self, operation: Operation, scheduler: "Scheduler"):
        self.operation = operation
        self._scheduler = scheduler
        self.closed = False

    def _accepting(self, hook: str) -> bool:
        if self.closed:
            logger.warning(f"Ignored {hook} for finished operation {self.operation.uid}")
        return not self.closed

    def on_progress(self, patch: dict[str, Any]) -> None:
        if not self._accepting("on_progress"):
            return
        progress = self.operation.progress
        phase_changed = False
        for key, value in patch.items():
            name = _PROGRESS_ALIASES.get(key, key)
            if name not in PATCHABLE_PROGRESS_FIELDS:
                logger.warning(f"Operation {self.operation.uid}: ignored progress field '{key}'")
                continue
            if name == "fraction":
                value = max(0.0, min(float(value), 1.0))
            elif name in ("phase_index", "phase_count"):
                value = int(value)
                phase_changed = phase_changed or getattr(progress, name) != value
            elif name == "error":
                value = None if value is None else str(value)
            setattr(progress, name, value)
        self._scheduler.notifier.broadcast_operation(self.operation)
        if phase_changed:
            self._scheduler.queue.persist()

    def on_funnel(self, entry: dict[str, Any]) -> None:
        if not self._accepting("on_funnel"):
            return
        self.operation.funnel.append(FunnelEntry.model_validate(entry))
        self._scheduler.notifier.broadcast_operation(self.operation)

    def on_filters(self, filters: list[str]) -> None:
        if not self._accepting("on_filters"):
            return
        self.operation.filters.extend(str(f) for f in filters)
        self._scheduler.notifier.broadcast_operation(self.operation)

    async def on_output(self, phase: PhaseType, data: Any) -> None:
        if not self._accepting("on_output"):
            return
        await self._scheduler.publish_output(self.operation, phase, data)


class Scheduler:
    """Runs at most one operation at a time, in submission order."""

    def __init__(
        self,
        queue: OperationQueue,
        notifier: Notifier,
        artifacts: ArtifactCache,
        analyzer: Analyzer,
        strict: bool = STRICT_INVARIANTS,
    ):
        self.queue = queue
        self.notifier = notifier
        self.artifacts = artifacts
        self.analyzer = analyzer
        self.strict = strict
        self._current: Optional[Operation] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> Optional[Operation]:
        return self._current

    def start_next(self) -> Optional[Operation]:
        """Start the oldest queued operation if idle. Must be called on the event loop."""
        if self._current is not None:
            message = (
                f"start_next: already running {self._current.uid}. "
                f"This is a control-flow bug."
            )
            if self.strict:
                raise SchedulerInvariantError(message)
            logger.error(message)
            return None

        operation = self.queue.eligible_for_start()
        if operation is None:
            logger.info(
                f"start_next: no more operations to be started right now "
                f"({len(self.queue)} total)"
            )
            return None

        self._current = operation
        operation.progress.state = OperationState.RUNNING
        operation.progress.started_at = unix_time_now()
        self.notifier.broadcast_status(is_running=True)
        self.notifier.broadcast_operation(operation)

        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._execute(operation), name=f"analysis-{operation.uid}")
        logger.info(f"Started operation {operation.uid} (seq {operation.seq})")
        return operation

    async def _execute(self, operation: Operation) -> None:
        hooks = OperationHooks(operation, self)
        query = operation.request.op_query
        started = time.monotonic()
        try:
            await self.analyzer.analyze(operation.request.model_copy(deep=True), hooks)
            logger.info(
                f"Analysis of '{query}' complete in {time.monotonic() - started:.0f} seconds"
            )
        except asyncio.CancelledError:
            hooks.closed = True
            self._current = None
            self._task = None
            logger.warning(f"Analysis of '{query}' interrupted; it will be re-queued on restart")
            raise
        except Exception as e:
            logger.error(
                f"Analysis of '{query}' FAILED after {time.monotonic() - started:.0f} seconds: {e}",
                exc_info=True,
            )
            operation.progress.error = str(e) or "(unknown)"

        hooks.closed = True
        self._finish(operation)

    def _finish(self, operation: Operation) -> None:
        operation.progress.state = OperationState.DONE
        operation.progress.ended_at = unix_time_now()
        self.notifier.broadcast_operation(operation)
        self.queue.persist()

        self._current = None
        self._task = None
        self.notifier.broadcast_status(is_running=False, queue_full=self.queue.is_saturated())

        self.start_next()

    async def publish_output(self, operation: Operation, phase: PhaseType, data: Any) -> None:
        """Store a phase output according to OUTPUT_POLICIES."""
        policy = OUTPUT_POLICIES.get(phase)
        if policy is None:
            logger.debug(f"Operation {operation.uid}: output of phase {phase} not stored")
            return

        if not policy.tabular:
            await self.artifacts.store_blob(blob_key(policy.blob_kind, operation.uid), data)
            return

        key = table_key(operation.uid, len(operation.outputs))
        try:
            ref = await self.artifacts.store_table(key, data)
        except ArtifactDataError as e:
            logger.warning(f"Operation {operation.uid}: phase {phase} output not stored: {e}")
            operation.progress.error = f"Insufficient data or other data issue ({int(phase)})"
            self.notifier.broadcast_operation(operation)
            return

        operation.outputs.append(ref)
        self.notifier.broadcast_operation(operation)
        self.queue.persist()

    async def wait_idle(self) -> None:
        """Wait until the chain of operations has drained."""
        while self._task is not None:
            task = self._task
            await asyncio.wait({task})
            if self._task is task:
                break

    async def stop(self) -> None:
        """Interrupt the running analysis (process shutdown)."""
        task = self._task
        if task is None:
            return
        task.cancel()
        await asyncio.wait({task})
