"""Unit tests for varflow.core.logging_config module."""

import re

from varflow.core.logging_config import add_file_handler, get_log_path, get_logger, setup_logging


class TestGetLogPath:
    """Tests for get_log_path function."""

    def test_timestamped_name(self, temp_output_dir):
        path = get_log_path(temp_output_dir)
        assert path.parent == temp_output_dir
        assert re.fullmatch(r"varflow_\d{8}_\d{6}\.log", path.name)


class TestFileHandler:
    """Tests for the per-run log file."""

    def test_run_log_receives_debug_records(self, temp_output_dir):
        """The run log keeps debug detail even when the console shows only INFO."""
        setup_logging(level="INFO")
        log_path = temp_output_dir / "logs" / "run.log"
        add_file_handler(log_path)

        get_logger("varflow.executor").debug("[cutadapt] Finished in 0.5 s")

        assert "[cutadapt] Finished in 0.5 s" in log_path.read_text()

    def test_second_run_log_replaces_first(self, temp_output_dir):
        """Only the newest run log receives records."""
        setup_logging(level="INFO")
        first = temp_output_dir / "first.log"
        second = temp_output_dir / "second.log"
        add_file_handler(first)
        add_file_handler(second)

        get_logger("varflow.pipeline").info("Run run_1 started")

        assert "Run run_1 started" in second.read_text()
        assert "Run run_1 started" not in first.read_text()
