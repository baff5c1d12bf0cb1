from __future__ import annotations

import json
import logging

from libs.common.log import JsonFormatter, setup_logging


def test_json_formatter_keeps_extras():
    record = logging.LogRecord("services.engine.dispatcher", logging.INFO, __file__, 1,
                               "MATCH %s", ("abcd1234",), None)
    record.order_id = "abcd1234"
    out = json.loads(JsonFormatter().format(record))
    assert out["message"] == "MATCH abcd1234"
    assert out["level"] == "INFO"
    assert out["order_id"] == "abcd1234"


def test_setup_logging_is_idempotent():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        setup_logging("debug")
        setup_logging("INFO", json_format=True)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
