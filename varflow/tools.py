#!/usr/bin/env python3
"""Resolution of the user's variant-calling tool selection."""

from collections.abc import Iterable

from varflow.core.constants import TOOL_REGISTRY, ToolSet
from varflow.core.exceptions import ToolSelectionError
from varflow.core.logging_config import get_logger

logger = get_logger(__name__)


def select_tools(requested: str | Iterable[str] | None, registry: ToolSet = TOOL_REGISTRY) -> ToolSet:
    """Resolve a comma-separated tool list against the tool registry.

    Names are trimmed and lower-cased; empty entries are ignored, so an empty
    string selects no tools.

    Args:
        requested: Comma-separated string (e.g. ``"lofreq,ivar"``) or an iterable of names.
        registry: Names that may be selected.

    Returns:
        The frozen set of selected tools.

    Raises:
        ToolSelectionError: If any requested name is not in the registry.
    """
    if requested is None:
        names: list[str] = []
    elif isinstance(requested, str):
        names = requested.split(",")
    else:
        names = list(requested)

    tools = frozenset(name.strip().lower() for name in names if name.strip())
    unknown = tools - registry
    if unknown:
        raise ToolSelectionError(list(unknown), frozenset(registry))

    logger.debug(f"Selected tools: {', '.join(sorted(tools)) or 'none'}")
    return tools
