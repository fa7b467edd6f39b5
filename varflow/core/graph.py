#!/usr/bin/env python3
"""Pipeline graph construction and data-driven execution.

The graph is built once, before anything runs: stages are added with their
channels, activation predicates are evaluated against the selected tools,
and the topology is validated. ``run`` then feeds the source channels and
schedules stage instances as their inputs arrive. Instances for different
samples run concurrently on a thread pool; channels are only touched from
the scheduling thread.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Hashable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from varflow.core.channel import Channel, ChannelView
from varflow.core.constants import KEY_FIELD, RESOURCE_CLASSES, SAMPLES_DIR, Element, ToolSet
from varflow.core.exceptions import GraphError, StageExecutionError, VarflowError
from varflow.core.logging_config import get_logger
from varflow.core.stage import Stage, StageAction, StageRecord, StageState

logger = get_logger(__name__)

SOURCE_PRODUCER = "<source>"


class StageExecutor(Protocol):
    """Runs the external command behind a stage for one input tuple.

    Implementations return the produced outputs by name, or raise
    :class:`StageExecutionError` with the exit code and a stderr excerpt.
    """

    def execute(self, stage_name: str, inputs: Mapping[str, Any], work_dir: Path) -> Mapping[str, Any]: ...


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    COMPLETED_WITH_ERRORS = "completed with errors"
    FAILED = "failed"


@dataclass
class RunReport:
    """Outcome of a pipeline run."""

    status: RunStatus
    records: list[StageRecord]
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def records_for(self, stage: str) -> list[StageRecord]:
        return [r for r in self.records if r.stage == stage]

    def failures(self) -> list[StageRecord]:
        return [r for r in self.records if r.state == StageState.FAILED and not r.ignored]

    def samples(self) -> list[str]:
        return sorted({r.key for r in self.records if r.key is not None})

    def failed_samples(self) -> list[str]:
        return sorted({r.key for r in self.failures() if r.key is not None})


@dataclass(eq=False)
class _Slot:
    """Scheduling state of one stage during a run."""

    stage: Stage
    view: ChannelView | None
    values: list[Channel]
    active: bool
    max_forks: int
    queue: deque = field(default_factory=deque)
    running: int = 0
    started: bool = False
    done: bool = False


@dataclass
class _Task:
    slot: _Slot
    record: StageRecord
    element: dict[str, Any]
    inputs: dict[str, Any]
    work_dir: Path


def _as_channel(source: Channel | ChannelView) -> Channel:
    return source.channel if isinstance(source, ChannelView) else source


class PipelineGraph:
    """Owns every stage and channel of a pipeline and drives its execution.

    Args:
        tools: Selected tools; each stage's activation is evaluated once against them.
        executor: Runs stages that have no in-process action.
        output_dir: Root directory; per-sample work goes to ``samples/<id>``.
        threads: Maximum number of stage instances running at once.
        fail_fast: Abort the run on the first non-ignorable stage failure.
        max_retries: Extra attempts after a :class:`StageExecutionError`.
        strict_joins: Unmatched join keys raise instead of being dropped.
        max_forks: Per-stage concurrency overrides by stage name.
        listener: Called with each stage record when it reaches a terminal state.
    """

    def __init__(
        self,
        tools: ToolSet,
        executor: StageExecutor | None = None,
        output_dir: Path | str = ".",
        threads: int = 4,
        fail_fast: bool = False,
        max_retries: int = 0,
        strict_joins: bool = True,
        max_forks: Mapping[str, int] | None = None,
        listener: Callable[[StageRecord], None] | None = None,
    ):
        if threads < 1:
            raise ValueError(f"threads must be at least 1, got {threads}")
        self.tools = frozenset(tools)
        self.executor = executor
        self.output_dir = Path(output_dir).resolve()
        self.threads = threads
        self.fail_fast = fail_fast
        self.max_retries = max_retries
        self.strict_joins = strict_joins
        self.listener = listener
        self._max_forks = dict(max_forks or {})

        self._channels: dict[str, Channel] = {}
        self._sources: list[tuple[Channel, list[Element]]] = []
        self._slots: dict[str, _Slot] = {}
        self._records: list[StageRecord] = []
        self._running: dict[Future, _Task] = {}
        self._has_run = False

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @property
    def stages(self) -> list[Stage]:
        return [slot.stage for slot in self._slots.values()]

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    def stage(self, name: str) -> Stage:
        return self._slots[name].stage

    def is_active(self, name: str) -> bool:
        return self._slots[name].active

    def channel(self, name: str, fields: Iterable[str]) -> Channel:
        """Create a channel owned by this graph."""
        if name in self._channels:
            raise GraphError(f"Duplicate channel name: {name}")
        channel = Channel(name, tuple(fields))
        self._channels[name] = channel
        return channel

    def source(self, name: str, fields: Iterable[str], items: Iterable[Element]) -> Channel:
        """Create a channel whose elements are emitted when the run starts."""
        channel = self.channel(name, fields)
        channel.producer = SOURCE_PRODUCER
        self._sources.append((channel, [tuple(item) for item in items]))
        return channel

    def join(self, left: Channel, right: Channel, by: str = KEY_FIELD, name: str | None = None) -> Channel:
        """Join two channels by key using this graph's starvation policy."""
        return left.join(right, by=by, strict=self.strict_joins, name=name)

    def add_stage(self, stage: Stage) -> Stage:
        """Register a stage, claim its output channels and evaluate its activation."""
        if stage.name in self._slots:
            raise GraphError(f"Duplicate stage name: {stage.name}")
        if stage.action is None and self.executor is None:
            raise GraphError(f"Stage {stage.name} has no action and the graph has no executor")
        if stage.resources not in RESOURCE_CLASSES:
            raise GraphError(f"Stage {stage.name} has unknown resource class {stage.resources!r}")

        for channel in stage.outputs:
            if channel.producer is not None:
                raise GraphError(f"Channel {channel.name} is already produced by {channel.producer}")
        for channel in stage.outputs:
            channel.producer = stage.name
            self._channels.setdefault(channel.name, channel)

        view = None
        if stage.input is not None:
            view = stage.input if isinstance(stage.input, ChannelView) else stage.input.view()

        max_forks = self._max_forks.get(stage.name) or stage.max_forks or RESOURCE_CLASSES[stage.resources]
        active = bool(stage.activation(self.tools))
        self._slots[stage.name] = _Slot(
            stage=stage,
            view=view,
            values=[_as_channel(v) for v in stage.values],
            active=active,
            max_forks=max_forks,
        )
        logger.debug(f"Added stage {stage.name} ({'active' if active else 'inactive'}, max forks {max_forks})")
        return stage

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def _producers(self, channel: Channel) -> set[str]:
        if channel.producer is not None:
            return {channel.producer}
        producers: set[str] = set()
        for parent in channel.parents:
            producers |= self._producers(parent)
        return producers

    def _input_channels(self, slot: _Slot) -> list[Channel]:
        channels = list(slot.values)
        if slot.view is not None:
            channels.insert(0, slot.view.channel)
        return channels

    def upstream(self, name: str) -> set[str]:
        """Names of the stages whose outputs feed ``name`` directly."""
        producers: set[str] = set()
        for channel in self._input_channels(self._slots[name]):
            producers |= self._producers(channel)
        producers.discard(SOURCE_PRODUCER)
        return producers

    def validate(self) -> None:
        """Check that every consumed channel has a producer and the graph is acyclic."""
        for name, slot in self._slots.items():
            for channel in self._input_channels(slot):
                if not self._producers(channel):
                    raise GraphError(f"Stage {name} reads channel {channel.name}, which nothing produces")
                for root in self._producers(channel):
                    if root != SOURCE_PRODUCER and root not in self._slots:
                        raise GraphError(f"Channel {channel.name} is produced by unknown stage {root}")
        self.topological_order()

    def topological_order(self) -> list[str]:
        """Stage names ordered so that every stage follows its upstream stages."""
        remaining = {name: set(self.upstream(name)) for name in self._slots}
        order: list[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            if not ready:
                raise GraphError(f"Pipeline graph has a cycle between: {', '.join(sorted(remaining))}")
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

    def describe(self) -> list[dict[str, Any]]:
        """Summarize the topology, one entry per stage in dependency order."""
        description = []
        for name in self.topological_order():
            slot = self._slots[name]
            stage = slot.stage
            description.append(
                {
                    "stage": name,
                    "inputs": [channel.name for channel in self._input_channels(slot)],
                    "outputs": [channel.name for channel in stage.outputs],
                    "upstream": sorted(self.upstream(name)),
                    "activation": getattr(stage.activation, "__name__", None) or str(stage.activation),
                    "active": slot.active,
                    "max_forks": slot.max_forks,
                }
            )
        return description

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self) -> RunReport:
        """Execute the graph to completion and report every stage instance."""
        if self._has_run:
            raise GraphError("A pipeline graph can only be run once")
        self._has_run = True
        self.validate()
        order = [self._slots[name] for name in self.topological_order()]

        error: VarflowError | None = None
        with ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix="varflow") as pool:
            try:
                for channel, items in self._sources:
                    for item in items:
                        channel.emit(item)
                    channel.close()
                self._advance(order, pool)
                while self._running:
                    finished, _ = wait(list(self._running), return_when=FIRST_COMPLETED)
                    for future in finished:
                        self._complete(future)
                    self._advance(order, pool)
                stalled = [slot.stage.name for slot in order if not slot.done]
                if stalled:
                    raise GraphError(f"Pipeline stalled with unfinished stages: {', '.join(stalled)}")
            except VarflowError as exc:
                error = exc
                logger.error(f"Run aborted: {exc}")
                self._abort(order)

        return self._report(error)

    def _advance(self, order: list[_Slot], pool: ThreadPoolExecutor) -> None:
        progress = True
        while progress:
            progress = False
            for slot in order:
                progress |= self._pump(slot)
            self._dispatch(order, pool)

    def _pump(self, slot: _Slot) -> bool:
        """Turn newly arrived elements into stage instances; close outputs when finished."""
        if slot.done:
            return False
        stage = slot.stage
        progress = False

        if slot.view is not None:
            for key in slot.view.drain_abandoned():
                for channel in stage.outputs:
                    channel.abandon(key)
                progress = True

        if not all(channel.closed for channel in slot.values):
            return progress

        if slot.view is None:
            if not slot.started:
                slot.started = True
                self._instantiate(slot, {})
                progress = True
        else:
            for item in slot.view.drain():
                self._instantiate(slot, dict(zip(slot.view.fields, item)))
                progress = True

        finished_input = slot.started if slot.view is None else slot.view.exhausted
        if finished_input and not slot.queue and not slot.running:
            for channel in stage.outputs:
                channel.close()
            slot.done = True
            logger.debug(f"Stage {stage.name} finished")
            progress = True
        return progress

    def _instantiate(self, slot: _Slot, element: dict[str, Any]) -> None:
        stage = slot.stage
        key = element.get(KEY_FIELD)
        record = StageRecord(stage=stage.name, key=key)
        self._records.append(record)
        record.advance(StageState.ELIGIBLE)

        value_inputs: dict[str, Any] = {}
        for channel in slot.values:
            if len(channel.items) > 1:
                raise GraphError(f"Value channel {channel.name} delivered {len(channel.items)} elements")
            if channel.items:
                value_inputs.update(zip(channel.fields, channel.items[0]))

        if not slot.active:
            self._skip(slot, record, "tool not selected")
        elif any(not channel.items for channel in slot.values):
            self._skip(slot, record, "missing upstream value")
        else:
            inputs = {**stage.params, **value_inputs, **element}
            work_dir = self._work_dir(stage, key)
            slot.queue.append(_Task(slot, record, element, inputs, work_dir))

    def _work_dir(self, stage: Stage, key: Hashable | None) -> Path:
        if key is not None:
            return self.output_dir / SAMPLES_DIR / str(key)
        if stage.publish_dir:
            return self.output_dir / stage.publish_dir
        return self.output_dir

    def _skip(self, slot: _Slot, record: StageRecord, reason: str) -> None:
        record.advance(StageState.SKIPPED, reason)
        if record.key is not None:
            for channel in slot.stage.outputs:
                channel.abandon(record.key)
        logger.debug(f"Skipped {slot.stage.name} [{record.key}]: {reason}")
        self._notify(record)

    def _dispatch(self, order: list[_Slot], pool: ThreadPoolExecutor) -> None:
        for slot in order:
            while slot.queue and slot.running < slot.max_forks and len(self._running) < self.threads:
                task = slot.queue.popleft()
                task.record.advance(StageState.RUNNING)
                slot.running += 1
                logger.debug(f"Running {slot.stage.name} [{task.record.key}]")
                future = pool.submit(self._execute, task)
                self._running[future] = task

    def _action(self, stage: Stage) -> StageAction:
        if stage.action is not None:
            return stage.action
        executor = self.executor
        return lambda inputs, work_dir: executor.execute(stage.name, inputs, work_dir)

    def _execute(self, task: _Task) -> Mapping[str, Any]:
        """Worker-thread body: run the stage action with bounded retries."""
        action = self._action(task.slot.stage)
        task.work_dir.mkdir(parents=True, exist_ok=True)
        while True:
            task.record.attempts += 1
            try:
                return action(task.inputs, task.work_dir)
            except StageExecutionError as exc:
                if task.record.attempts > self.max_retries:
                    raise
                logger.warning(
                    f"{task.slot.stage.name} [{task.record.key}] failed on attempt {task.record.attempts}, retrying: {exc}"
                )

    def _complete(self, future: Future) -> None:
        task = self._running.pop(future)
        slot, record, stage = task.slot, task.record, task.slot.stage
        slot.running -= 1

        exc = future.exception()
        outputs: Mapping[str, Any] = {}
        if exc is None:
            outputs = future.result() or {}
            values = {**task.element, **outputs}
            missing = sorted({f for ch in stage.outputs for f in ch.fields if f not in values})
            if missing:
                exc = StageExecutionError(stage.name, f"{stage.name} produced no declared output {', '.join(missing)}")

        if exc is None:
            record.advance(StageState.SUCCEEDED)
            record.outputs = dict(outputs)
            logger.info(f"Completed {stage.name}" + (f" for {record.key}" if record.key is not None else ""))
            self._notify(record)
            for channel in stage.outputs:
                channel.emit(tuple(values[f] for f in channel.fields))
            return

        if isinstance(exc, StageExecutionError) and exc.sample_id is None:
            exc.sample_id = record.key
        record.advance(StageState.FAILED, str(exc))
        where = f" for sample {record.key}" if record.key is not None else ""

        if stage.ignore_errors and not stage.fatal:
            record.ignored = True
            logger.warning(f"Ignoring failure of {stage.name}{where}: {exc}")
        else:
            logger.error(f"{stage.name} failed{where}: {exc}")
        self._notify(record)

        if record.key is not None:
            for channel in stage.outputs:
                channel.abandon(record.key)

        if isinstance(exc, VarflowError) and not isinstance(exc, StageExecutionError):
            raise exc
        if stage.fatal:
            raise exc if isinstance(exc, VarflowError) else StageExecutionError(stage.name, str(exc))
        if self.fail_fast and not record.ignored:
            raise exc if isinstance(exc, VarflowError) else StageExecutionError(stage.name, str(exc))

    def _abort(self, order: list[_Slot]) -> None:
        """Cancel queued work and settle instances that are still running."""
        for future in list(self._running):
            future.cancel()
        for future, task in list(self._running.items()):
            if future.cancelled():
                task.record.advance(StageState.FAILED, "cancelled: run aborted")
            else:
                wait([future])
                exc = future.exception()
                if exc is None:
                    task.record.advance(StageState.SUCCEEDED)
                else:
                    task.record.advance(StageState.FAILED, str(exc))
            self._notify(task.record)
        self._running.clear()
        for slot in order:
            while slot.queue:
                task = slot.queue.popleft()
                task.record.advance(StageState.SKIPPED, "run aborted")
                self._notify(task.record)

    def _notify(self, record: StageRecord) -> None:
        if self.listener is not None:
            self.listener(record)

    def _report(self, error: VarflowError | None) -> RunReport:
        if error is not None:
            return RunReport(RunStatus.FAILED, list(self._records), str(error))
        report = RunReport(RunStatus.SUCCEEDED, list(self._records))
        failures = report.failures()
        if failures:
            failed = set(report.failed_samples())
            succeeded = [s for s in report.samples() if s not in failed]
            report.status = RunStatus.COMPLETED_WITH_ERRORS if succeeded else RunStatus.FAILED
            report.error = f"{len(failures)} stage instance(s) failed"
        return report
