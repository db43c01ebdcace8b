import logging

from chatsphere.observability.context import get_operator, get_request_id, request_scope
from chatsphere.observability.logging import ContextFilter, configure_logging


def test_request_scope_binds_and_restores():
    assert get_request_id() is None
    with request_scope("req-1", "amina") as rid:
        assert rid == "req-1"
        assert get_request_id() == "req-1"
        assert get_operator() == "amina"
        with request_scope(operator=" ") as inner:
            assert inner != "req-1"
            assert get_operator() is None
        assert get_request_id() == "req-1"
    assert get_request_id() is None
    assert get_operator() is None


def test_log_records_carry_context():
    first = configure_logging("INFO")
    second = configure_logging("INFO")
    root = logging.getLogger()
    for target in [root, *root.handlers]:
        installed = [f for f in target.filters if isinstance(f, ContextFilter)]
        assert installed == [second]
    assert first is not second

    record = logging.LogRecord("chatsphere.test", logging.INFO, __file__, 1, "hello", None, None)
    with request_scope("req-2", "amina"):
        second.filter(record)
    assert record.request_id == "req-2"
    assert record.operator == "amina"

    bare = logging.LogRecord("chatsphere.test", logging.INFO, __file__, 1, "hello", None, None)
    second.filter(bare)
    assert (bare.request_id, bare.operator) == ("-", "-")


def test_client_libraries_are_quiet_unless_verbose():
    configure_logging("DEBUG", verbose=False)
    assert logging.getLogger("httpx").level == logging.WARNING
    configure_logging("INFO", verbose=True)
    assert logging.getLogger("websockets").level == logging.DEBUG
    configure_logging("not-a-level")
    assert logging.getLogger().level == logging.INFO
    assert logging.getLogger("websockets").level == logging.WARNING
