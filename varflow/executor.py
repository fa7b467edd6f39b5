#!/usr/bin/env python3
"""Stage executor running each stage's external command as a subprocess."""

import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from varflow.commands import COMMANDS, TASKS, Command, CommandBuilder, Task
from varflow.core.exceptions import StageExecutionError
from varflow.core.graph import StageExecutor
from varflow.core.logging_config import get_logger, log_subprocess_stderr
from varflow.core.utils import is_tool, stderr_excerpt

logger = get_logger(__name__)

# Exit status a shell reports for a command it cannot find
COMMAND_NOT_FOUND = 127


class CommandExecutor(StageExecutor):
    """Run stages through registered command builders and in-process tasks.

    Args:
        commands: Command builders by stage name.
        tasks: In-process tasks by stage name; checked before commands.
        shell: Shell used for piped commands.
    """

    def __init__(
        self,
        commands: Mapping[str, CommandBuilder] = COMMANDS,
        tasks: Mapping[str, Task] = TASKS,
        shell: str = "/bin/bash",
    ):
        self.commands = dict(commands)
        self.tasks = dict(tasks)
        self.shell = shell

    def knows(self, stage_name: str) -> bool:
        return stage_name in self.tasks or stage_name in self.commands

    def execute(self, stage_name: str, inputs: Mapping[str, Any], work_dir: Path) -> Mapping[str, Any]:
        """Run one stage instance and return its declared outputs.

        Raises:
            StageExecutionError: If the stage is unknown, a required binary is
                missing, the command exits non-zero or a declared output was
                not written.
        """
        if stage_name in self.tasks:
            return self._run_task(stage_name, self.tasks[stage_name], inputs, work_dir)

        builder = self.commands.get(stage_name)
        if builder is None:
            raise StageExecutionError(stage_name, f"No command registered for stage {stage_name}")
        command = builder(inputs, work_dir)
        return self._run_command(stage_name, command, work_dir)

    def _run_task(self, stage_name: str, task: Task, inputs: Mapping[str, Any], work_dir: Path) -> Mapping[str, Any]:
        try:
            return task(inputs, work_dir)
        except StageExecutionError:
            raise
        except (OSError, ValueError, KeyError) as e:
            raise StageExecutionError(stage_name, f"{stage_name} failed: {e}") from e

    def _run_command(self, stage_name: str, command: Command, work_dir: Path) -> Mapping[str, Any]:
        missing_tools = [tool for tool in command.requires if not is_tool(tool)]
        if missing_tools:
            raise StageExecutionError(
                stage_name,
                f"Required tool(s) not found on PATH: {', '.join(missing_tools)}",
                exit_code=COMMAND_NOT_FOUND,
            )

        logger.debug(f"[{stage_name}] {command}")
        run_kwargs: dict[str, Any] = {
            "shell": command.shell,
            "executable": self.shell if command.shell else None,
            "cwd": work_dir,
            "text": True,
        }
        if command.stdout is not None:
            with command.stdout.open("w") as out:
                result = subprocess.run(command.args, stdout=out, stderr=subprocess.PIPE, **run_kwargs)
        else:
            result = subprocess.run(command.args, capture_output=True, **run_kwargs)
        log_subprocess_stderr(result.stderr, command.program)

        if result.returncode != 0:
            raise StageExecutionError(
                stage_name,
                f"{command.program} failed",
                exit_code=result.returncode,
                stderr_excerpt=stderr_excerpt(result.stderr),
            )

        missing = [name for name, path in command.outputs.items() if path is not None and not Path(path).exists()]
        if missing:
            raise StageExecutionError(stage_name, f"{stage_name} produced no declared output {', '.join(missing)}")
        return dict(command.outputs)
