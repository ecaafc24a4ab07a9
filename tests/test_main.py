"""
Tests for the command-line entry point and logging setup.
"""
import logging

import pytest
import structlog

from cmdserver.config import Settings
from cmdserver.logging import setup_logging
from cmdserver.main import build_parser


@pytest.fixture
def restore_logging():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    logging.basicConfig(force=True)
    logging.getLogger().setLevel(logging.WARNING)


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.mode in ("multi", "single")
    assert isinstance(args.port, int)
    assert args.no_log_file is False


def test_parser_options():
    args = build_parser().parse_args(
        ["--port", "7000", "--mode", "single", "--framing", "whole_buffer", "--no-log-file"]
    )
    assert args.port == 7000
    assert args.mode == "single"
    assert args.framing == "whole_buffer"
    assert args.no_log_file is True


def test_setup_logging_writes_file(tmp_path, restore_logging):
    setup_logging("unit", level="DEBUG", log_dir=tmp_path)

    assert (tmp_path / "unit.log").exists()
    assert logging.getLogger().level == logging.DEBUG
    assert structlog.contextvars.get_contextvars()["component"] == "unit"


def test_setup_logging_uses_settings(tmp_path, restore_logging):
    config = Settings(_env_file=None, log_dir=tmp_path, log_level="warning", log_to_file=False)

    setup_logging("quiet", config=config)

    assert logging.getLogger().level == logging.WARNING
    assert not (tmp_path / "quiet.log").exists()


def test_setup_logging_rejects_unknown_level(restore_logging):
    with pytest.raises(ValueError):
        setup_logging("unit", level="LOUD", log_to_file=False)
