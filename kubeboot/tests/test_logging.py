import logging

from kubeboot.config import LoggingConfig
from kubeboot.logging import redact_tokens, setup_logging

from .conftest import JOIN_COMMAND


def test_component_log_file(tmp_path):
    logger = setup_logging("join", LoggingConfig(directory=str(tmp_path)))
    logger.info("Waiting for join command")
    for handler in logging.getLogger("kubeboot").handlers:
        handler.flush()

    assert logger.name == "kubeboot.join"
    content = (tmp_path / "join.log").read_text()
    assert " - kubeboot.join - INFO - Waiting for join command" in content


def test_tokens_are_redacted_in_log_file(tmp_path):
    logger = setup_logging("init", LoggingConfig(directory=str(tmp_path)))
    logger.warning(JOIN_COMMAND)
    for handler in logging.getLogger("kubeboot").handlers:
        handler.flush()

    content = (tmp_path / "init.log").read_text()
    assert "0123456789abcdef" not in content
    assert "abcdef.[REDACTED]" in content


def test_unwritable_log_dir_falls_back_to_console(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    setup_logging("verify", LoggingConfig(directory=str(blocker / "logs")))
    handlers = logging.getLogger("kubeboot").handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.StreamHandler)


def test_debug_level(tmp_path):
    setup_logging("verify", LoggingConfig(directory=str(tmp_path)), debug=True)
    assert logging.getLogger("kubeboot").level == logging.DEBUG


def test_redact_tokens():
    assert redact_tokens(JOIN_COMMAND).count("[REDACTED]") == 1
