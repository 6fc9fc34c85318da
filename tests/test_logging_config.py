"""
Tests for revshare/logging_config.py
"""

import json
import logging

from revshare.logging_config import (
    JSONFormatter,
    RunContext,
    StructuredFormatter,
    cycle_id_var,
    distribution_id_var,
    setup_logging,
)


def _record(message="cycle applied", exc_info=None):
    return logging.LogRecord(
        name="revshare.accumulator",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=exc_info,
    )


class TestRunContext:

    def test_sets_and_restores(self):
        assert cycle_id_var.get() is None

        with RunContext(task_name="snapshot", cycle_id="cycle-1"):
            assert cycle_id_var.get() == "cycle-1"
            with RunContext(distribution_id="dist-1") as inner:
                assert distribution_id_var.get() == "dist-1"
                assert cycle_id_var.get() == inner.cycle_id
            assert distribution_id_var.get() is None
            assert cycle_id_var.get() == "cycle-1"

        assert cycle_id_var.get() is None

    def test_generates_cycle_id(self):
        assert len(RunContext().cycle_id) == 12


class TestFormatters:

    def test_json_includes_context(self):
        formatter = JSONFormatter(extra_fields={"service": "revshare"})

        with RunContext(task_name="distribution", cycle_id="c1", distribution_id="d1"):
            data = json.loads(formatter.format(_record()))

        assert data["message"] == "cycle applied"
        assert data["level"] == "INFO"
        assert data["task"] == "distribution"
        assert data["cycle_id"] == "c1"
        assert data["distribution_id"] == "d1"
        assert data["service"] == "revshare"

    def test_json_exception(self):
        try:
            raise ValueError("bad snapshot")
        except ValueError:
            import sys

            record = _record("failed", exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad snapshot"

    def test_structured_context_suffix(self):
        with RunContext(cycle_id="c9"):
            line = StructuredFormatter(use_color=False).format(_record())

        assert "[revshare.accumulator]" in line
        assert line.endswith("[cycle_id=c9]")


class TestSetupLogging:

    def test_writes_json_file(self, tmp_path):
        root = setup_logging(log_dir=tmp_path, level="DEBUG", console_output=False)
        try:
            logging.getLogger("revshare.test").info("hello")
            for handler in root.handlers:
                handler.flush()

            line = (tmp_path / "revshare.log").read_text().strip().splitlines()[-1]
            assert json.loads(line)["message"] == "hello"
            assert logging.getLogger("aiohttp").level == logging.WARNING
        finally:
            for handler in list(root.handlers):
                handler.close()
                root.removeHandler(handler)
