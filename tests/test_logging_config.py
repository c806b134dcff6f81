import logging
from contextlib import contextmanager

from logging_config import setup_logging


@contextmanager
def preserved_root_logger():
    """Restore root handlers and levels replaced by setup_logging"""
    root = logging.getLogger()
    numba_logger = logging.getLogger("numba")
    handlers, level, numba_level = root.handlers[:], root.level, numba_logger.level
    try:
        yield root
    finally:
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)
        numba_logger.setLevel(numba_level)


def test_setup_is_idempotent():
    with preserved_root_logger() as root:
        setup_logging()
        setup_logging(logging.DEBUG)

        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG
        assert logging.getLogger("numba").level == logging.WARNING


def test_log_file_receives_records(tmp_path):
    path = tmp_path / "run.log"
    with preserved_root_logger() as root:
        setup_logging(logging.INFO, str(path))
        logging.getLogger("wave_simulator").info("step %d done", 10)
        for handler in root.handlers:
            handler.flush()

        text = path.read_text(encoding="utf-8")

    assert "Logging initialized." in text
    assert "wave_simulator - INFO - step 10 done" in text


def test_second_setup_switches_log_file(tmp_path):
    first, second = tmp_path / "first.log", tmp_path / "second.log"
    with preserved_root_logger() as root:
        setup_logging(logging.INFO, str(first))
        first_handlers = root.handlers[:]
        setup_logging(logging.INFO, str(second))
        logging.getLogger("validate").info("cfl check passed")
        for handler in root.handlers + first_handlers:
            handler.flush()
        for handler in first_handlers:
            handler.close()

        assert "cfl check passed" not in first.read_text(encoding="utf-8")
        assert "validate - INFO - cfl check passed" in second.read_text(encoding="utf-8")
