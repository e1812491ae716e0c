import logging

import pytest

from kubestack import config
from kubestack.logging import setup_logging_from_config
from kubestack.logging.format import DefaultFormatter


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    loggers = ["kubestack", "botocore", "kubestack.utils.sync"]
    levels = {name: logging.getLogger(name).level for name in loggers}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, logger_level in levels.items():
        logging.getLogger(name).setLevel(logger_level)


def test_setup_logging_from_config(monkeypatch, restore_logging):
    monkeypatch.setattr(config, "KS_LOG", "warn")

    setup_logging_from_config()

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("kubestack").level == logging.WARNING
    assert logging.getLogger("botocore").level == logging.ERROR
    handler = logging.getLogger().handlers[0]
    assert isinstance(handler.formatter, DefaultFormatter)


def test_trace_logging_enables_debug_for_polling(monkeypatch, restore_logging):
    monkeypatch.setattr(config, "KS_LOG", "trace")

    setup_logging_from_config()

    assert logging.getLogger("kubestack").level == logging.DEBUG
    assert logging.getLogger("botocore").level == logging.DEBUG
    assert logging.getLogger("kubestack.utils.sync").level == logging.DEBUG
