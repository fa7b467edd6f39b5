#!/usr/bin/env python3
"""Stage declarations and per-instance state tracking."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from varflow.core.channel import Channel, ChannelView
from varflow.core.constants import ToolSet
from varflow.core.exceptions import GraphError

Activation = Callable[[ToolSet], bool]
StageAction = Callable[[Mapping[str, Any], Path], Mapping[str, Any]]
ResourceClass = Literal["heavy", "medium", "light"]


class StageState(str, Enum):
    """Lifecycle of a single stage instance."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({StageState.SKIPPED, StageState.SUCCEEDED, StageState.FAILED})

_TRANSITIONS = {
    StageState.PENDING: {StageState.ELIGIBLE},
    StageState.ELIGIBLE: {StageState.SKIPPED, StageState.RUNNING},
    StageState.RUNNING: {StageState.SUCCEEDED, StageState.FAILED},
}


def always(tools: ToolSet) -> bool:
    """Default activation: the stage runs regardless of tool selection."""
    return True


@dataclass(frozen=True)
class UsesTool:
    """Activation predicate that holds when ``tool`` is selected."""

    tool: str

    def __call__(self, tools: ToolSet) -> bool:
        return self.tool in tools

    def __str__(self) -> str:
        return f"{self.tool} selected"


def uses_tool(tool: str) -> UsesTool:
    return UsesTool(tool)


@dataclass(eq=False)
class Stage:
    """A named unit of work bound to channels.

    The stage runs once per element of ``input``; without an input it runs
    exactly once. Every channel in ``values`` must deliver a single element
    whose fields are added to the inputs of every instance. Outputs are
    published into each channel in ``outputs`` by field name, drawing from
    the instance's input fields and the action's returned outputs.

    Attributes:
        name: Unique stage name, also the name passed to the executor.
        input: Channel (or a view of it) driving the stage.
        outputs: Channels this stage produces.
        values: Singleton channels shared by every instance.
        activation: Predicate evaluated once against the selected tools.
        action: In-process callable; None delegates to the stage executor.
        params: Static inputs merged into every instance's inputs.
        resources: Resource class used to pick the default concurrency limit.
        max_forks: Explicit concurrency limit overriding the resource class.
        fatal: A failure aborts the whole run.
        ignore_errors: A failure is logged but does not count against the run.
        publish_dir: Sub-directory of the output directory for run-level stages.
    """

    name: str
    input: Channel | ChannelView | None = None
    outputs: list[Channel] = field(default_factory=list)
    values: list[Channel] = field(default_factory=list)
    activation: Activation = always
    action: StageAction | None = None
    params: dict[str, Any] = field(default_factory=dict)
    resources: ResourceClass = "medium"
    max_forks: int | None = None
    fatal: bool = False
    ignore_errors: bool = False
    publish_dir: str | None = None

    def __repr__(self) -> str:
        return f"Stage({self.name!r})"


@dataclass
class StageRecord:
    """Outcome of one stage instance (one sample, or one run-level invocation)."""

    stage: str
    key: str | None = None
    state: StageState = StageState.PENDING
    error: str | None = None
    attempts: int = 0
    ignored: bool = False
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: StageState, error: str | None = None) -> None:
        """Move to ``state``, rejecting transitions the lifecycle does not allow."""
        if state not in _TRANSITIONS.get(self.state, set()):
            raise GraphError(f"Stage {self.stage} [{self.key}] cannot go from {self.state.value} to {state.value}")
        self.state = state
        if error is not None:
            self.error = error
