"""Unit tests for varflow.core.stage module."""

import pytest
from varflow.core.exceptions import GraphError
from varflow.core.stage import StageRecord, StageState, always, uses_tool


class TestActivation:
    """Tests for activation predicates."""

    def test_always(self):
        assert always(frozenset())

    def test_uses_tool(self):
        """A gated stage is active only when its tool is selected."""
        predicate = uses_tool("ivar")
        assert predicate(frozenset({"ivar", "lofreq"}))
        assert not predicate(frozenset({"lofreq"}))
        assert str(predicate) == "ivar selected"


class TestStageRecord:
    """Tests for the per-instance state machine."""

    def test_success_path(self):
        record = StageRecord("bwa_mem", "s1")
        for state in (StageState.ELIGIBLE, StageState.RUNNING, StageState.SUCCEEDED):
            record.advance(state)
        assert record.terminal

    def test_skip_path(self):
        """Eligible instances can be skipped with a reason."""
        record = StageRecord("ivar_variants", "s1")
        record.advance(StageState.ELIGIBLE)
        record.advance(StageState.SKIPPED, "tool not selected")

        assert record.terminal
        assert record.error == "tool not selected"

    @pytest.mark.parametrize(
        "path",
        [
            (StageState.RUNNING,),
            (StageState.ELIGIBLE, StageState.SUCCEEDED),
            (StageState.ELIGIBLE, StageState.SKIPPED, StageState.RUNNING),
            (StageState.ELIGIBLE, StageState.RUNNING, StageState.FAILED, StageState.PENDING),
        ],
    )
    def test_illegal_transitions(self, path):
        """Instances never skip a state or leave a terminal state."""
        record = StageRecord("cutadapt", "s1")
        with pytest.raises(GraphError, match="cannot go from"):
            for state in path:
                record.advance(state)
