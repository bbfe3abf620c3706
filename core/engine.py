"""Stage pipeline executor.

A pipeline is an ordered list of Stage values. Each Stage is a tagged record
(see StageKind) built with the helpers below and interpreted by _run_stage:

    sequential(id, fn)                      data = fn(data, ctx)
    parallel(id, *children)                 data = (child1_out, child2_out, ...)
    for_each(id, items, body, concurrency)  data = [body(item) for item in items]
    conditional(id, predicate, then, else)  data = branch(data), or unchanged
    tap(id, fn)                             fn(data, ctx); data unchanged

Step functions take (data, ctx). Coroutine functions are awaited; plain
functions run in a worker thread so blocking I/O never stalls the loop.
"""

import asyncio
import inspect
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import structlog

log = structlog.get_logger(__name__)


class PipelineError(Exception):
    """Base class for engine errors."""


class StageError(PipelineError):
    """A stage kept failing after all of its attempts."""

    def __init__(self, stage_id, attempts, cause):
        super().__init__(f"Stage '{stage_id}' failed after {attempts} attempts: {cause}")
        self.stage_id = stage_id
        self.attempts = attempts
        self.cause = cause


class InvalidTransition(PipelineError):
    """Run status change not allowed from the current status."""


class SuspendRun(Exception):
    """Raised by a step to stop the run in the suspended state."""

    def __init__(self, reason=""):
        super().__init__(reason)
        self.reason = reason


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.ERROR,
                        RunStatus.CANCELLED, RunStatus.SUSPENDED},
}


class StageKind(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    FOR_EACH = "for_each"
    CONDITIONAL = "conditional"
    TAP = "tap"


@dataclass(frozen=True)
class Stage:
    id: str
    kind: StageKind
    fn: Callable | None = None          # sequential step or tap callback
    children: tuple = ()                # parallel
    items: Callable | None = None       # for_each: (data, ctx) -> iterable
    body: "Stage | None" = None         # for_each
    concurrency: int = 1
    predicate: Callable | None = None   # conditional
    then: "Stage | None" = None
    otherwise: "Stage | None" = None
    attempts: int = 1


def _as_stage(stage_id, value):
    if value is None or isinstance(value, Stage):
        return value
    return sequential(stage_id, value)


def sequential(stage_id, fn, attempts=1):
    return Stage(stage_id, StageKind.SEQUENTIAL, fn=fn, attempts=attempts)


def parallel(stage_id, *children, attempts=1):
    if not children:
        raise ValueError(f"Parallel stage '{stage_id}' needs at least one child")
    return Stage(stage_id, StageKind.PARALLEL, attempts=attempts,
                 children=tuple(_as_stage(f"{stage_id}[{i}]", c) for i, c in enumerate(children)))


def for_each(stage_id, body, items=None, concurrency=1, attempts=1):
    """Run body once per item. With items=None the incoming data is iterated."""
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    return Stage(stage_id, StageKind.FOR_EACH, items=items, concurrency=concurrency,
                 body=_as_stage(f"{stage_id}.body", body), attempts=attempts)


def conditional(stage_id, predicate, then=None, otherwise=None):
    return Stage(stage_id, StageKind.CONDITIONAL, predicate=predicate,
                 then=_as_stage(f"{stage_id}.then", then),
                 otherwise=_as_stage(f"{stage_id}.else", otherwise))


def tap(stage_id, fn):
    return Stage(stage_id, StageKind.TAP, fn=fn)


@dataclass
class StepContext:
    state: Any
    execution_id: str
    stage_id: str
    index: int | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self):
        return self.cancel_event.is_set()


@dataclass
class Hooks:
    """Lifecycle callbacks. Any of them may be a plain function or a coroutine.

    on_start(run)
    on_stage_start(stage_id, run)
    on_stage_end(stage_id, data, run)
    on_error(error, run, cancelled)
    on_finish(result)
    """

    on_start: Callable | None = None
    on_stage_start: Callable | None = None
    on_stage_end: Callable | None = None
    on_error: Callable | None = None
    on_finish: Callable | None = None


@dataclass
class RunInfo:
    execution_id: str
    state: Any
    status: RunStatus = RunStatus.PENDING
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    task: Any = field(default=None, repr=False)

    def transition(self, new_status):
        if new_status not in _TRANSITIONS.get(self.status, ()):
            raise InvalidTransition(
                f"Cannot move run {self.execution_id} from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


@dataclass
class RunResult:
    status: RunStatus
    result: Any = None
    error: BaseException | None = None
    execution_id: str = ""
    state: Any = None

    @property
    def ok(self):
        return self.status == RunStatus.COMPLETED


async def _invoke(fn, data, ctx):
    if inspect.iscoroutinefunction(fn):
        return await fn(data, ctx)
    result = await asyncio.to_thread(fn, data, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _execute(stage, data, run, index=None):
    """Run a stage, retrying up to stage.attempts times."""
    attempts = max(1, stage.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await _run_stage(stage, data, run, index)
        except SuspendRun:
            raise
        except Exception as e:
            if attempt == attempts:
                if attempts == 1:
                    raise
                raise StageError(stage.id, attempts, e) from e
            log.warning("stage_retry", stage=stage.id, attempt=attempt, error=str(e))
    raise AssertionError("unreachable")


async def _gather(coros):
    """Run coroutines in a TaskGroup; surface the first failure itself, not a group."""
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(c) for c in coros]
    except BaseExceptionGroup as eg:
        raise eg.exceptions[0]
    return [t.result() for t in tasks]


async def _run_stage(stage, data, run, index=None):
    ctx = StepContext(state=run.state, execution_id=run.execution_id, stage_id=stage.id,
                      index=index, cancel_event=run.cancel_event)
    kind = stage.kind

    if kind is StageKind.SEQUENTIAL:
        return await _invoke(stage.fn, data, ctx)

    if kind is StageKind.TAP:
        try:
            await _invoke(stage.fn, data, ctx)
        except SuspendRun:
            raise
        except Exception as e:
            log.warning("tap_failed", stage=stage.id, error=str(e))
        return data

    if kind is StageKind.PARALLEL:
        results = await _gather(_execute(child, data, run, index) for child in stage.children)
        return tuple(results)

    if kind is StageKind.CONDITIONAL:
        branch = stage.then if await _invoke(stage.predicate, data, ctx) else stage.otherwise
        if branch is None:
            return data
        return await _execute(branch, data, run, index)

    if kind is StageKind.FOR_EACH:
        items = data if stage.items is None else await _invoke(stage.items, data, ctx)
        items = list(items or [])
        if stage.concurrency == 1:
            results = []
            for i, item in enumerate(items):
                results.append(await _execute(stage.body, item, run, i))
            return results

        sem = asyncio.Semaphore(stage.concurrency)

        async def one(i, item):
            async with sem:
                return await _execute(stage.body, item, run, i)

        return await _gather(one(i, item) for i, item in enumerate(items))

    raise PipelineError(f"Unknown stage kind: {kind}")


class Pipeline:
    """An ordered list of top-level stages plus lifecycle hooks."""

    def __init__(self, stages, hooks=None):
        self.stages = list(stages)
        self.hooks = hooks or Hooks()
        self.current = None

    async def _hook(self, name, *args):
        fn = getattr(self.hooks, name)
        if fn is None:
            return
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.error("hook_failed", hook=name, error=str(e))

    async def run(self, data=None, state=None):
        run = RunInfo(execution_id=uuid.uuid4().hex, state=state)
        run.task = asyncio.current_task()
        self.current = run

        run.transition(RunStatus.RUNNING)
        await self._hook("on_start", run)

        try:
            for stage in self.stages:
                await self._hook("on_stage_start", stage.id, run)
                data = await _execute(stage, data, run)
                await self._hook("on_stage_end", stage.id, data, run)
        except SuspendRun as e:
            run.transition(RunStatus.SUSPENDED)
            log.info("run_suspended", execution_id=run.execution_id, reason=e.reason)
            result = RunResult(RunStatus.SUSPENDED, result=data, execution_id=run.execution_id,
                               state=state)
        except asyncio.CancelledError as e:
            run.cancel_event.set()
            if run.task is not None:
                run.task.uncancel()
            run.transition(RunStatus.CANCELLED)
            await self._hook("on_error", e, run, True)
            result = RunResult(RunStatus.CANCELLED, error=e, execution_id=run.execution_id,
                               state=state)
        except Exception as e:
            run.transition(RunStatus.ERROR)
            log.error("run_failed", execution_id=run.execution_id, error=str(e))
            await self._hook("on_error", e, run, False)
            result = RunResult(RunStatus.ERROR, error=e, execution_id=run.execution_id,
                               state=state)
        else:
            run.transition(RunStatus.COMPLETED)
            result = RunResult(RunStatus.COMPLETED, result=data, execution_id=run.execution_id,
                               state=state)

        await self._hook("on_finish", result)
        return result

    def run_sync(self, data=None, state=None):
        return asyncio.run(self.run(data, state))

    def cancel(self):
        """Request cancellation of the active run. Safe to call from any thread."""
        run = self.current
        if run is None or run.task is None or run.task.done():
            return False
        run.cancel_event.set()
        loop = run.task.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            run.task.cancel()
        else:
            loop.call_soon_threadsafe(run.task.cancel)
        return True


def build(stages, hooks=None):
    stages = list(stages)
    if not stages:
        raise ValueError("A pipeline needs at least one stage")
    ids = [s.id for s in stages]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate stage ids: {ids}")
    return Pipeline(stages, hooks)
