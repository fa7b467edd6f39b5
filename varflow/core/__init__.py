from varflow.core.channel import Channel, ChannelView
from varflow.core.graph import PipelineGraph, RunReport, RunStatus, StageExecutor
from varflow.core.stage import Stage, StageRecord, StageState, always, uses_tool

__all__ = [
    "Channel",
    "ChannelView",
    "PipelineGraph",
    "RunReport",
    "RunStatus",
    "Stage",
    "StageExecutor",
    "StageRecord",
    "StageState",
    "always",
    "uses_tool",
]
