import logging

from core.exceptions import ValidationError
from core.logging import ContextFormatter, setup_logging


def make_record(**extra):
    record = logging.LogRecord("sync.processor", logging.ERROR, __file__, 1, "Transform failed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_error_context():
    formatter = ContextFormatter("%(levelname)s | %(message)s")
    error = ValidationError("Missing total_price", context={"external_id": "1001", "field_name": "total_price"})

    line = formatter.format(make_record(error_context=error.to_dict()))

    assert line.startswith("ERROR | Transform failed | context=")
    assert '"external_id": "1001"' in line
    assert '"error_class": "validation"' in line


def test_formatter_without_context():
    formatter = ContextFormatter("%(message)s")

    assert formatter.format(make_record()) == "Transform failed"


def test_setup_logging_quiets_noisy_libraries():
    setup_logging("debug")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert isinstance(logging.getLogger().handlers[0].formatter, ContextFormatter)

    setup_logging("info")
