import logging

from kubestack.logging.format import AddFormattedAttributes, compress_logger_name


def test_compress_logger_name():
    assert compress_logger_name("log", 1) == "l"
    assert compress_logger_name("log", 2) == "lo"
    assert compress_logger_name("log", 3) == "log"
    assert compress_logger_name("log", 5) == "log"
    assert compress_logger_name("kubestack.cfn.lifecycle", 1) == "k.c.l"
    assert compress_logger_name("kubestack.cfn.lifecycle", 15) == "k.cfn.lifecycle"
    assert compress_logger_name("kubestack.cfn.lifecycle", 14) == "k.c.lifecycle"
    assert compress_logger_name("kubestack.cfn.lifecycle", 23) == "kubestack.cfn.lifecycle"


def test_add_formatted_attributes():
    record = logging.LogRecord(
        name="kubestack.cfn.lifecycle.driver.internals",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="deleting stack",
        args=(),
        exc_info=None,
    )
    record.threadName = "task-tree_12"

    assert AddFormattedAttributes(max_name_len=20, max_thread_len=5).filter(record)

    assert record.ks_level == "WARN"
    assert record.ks_thread == "ee_12"
    assert len(record.ks_name) <= 20
    assert record.ks_name.endswith("internals")
