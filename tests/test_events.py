import json
import logging
from datetime import datetime

from key_rotator.events import FanOutUsageLogger, JsonFormatter, LoggingUsageLogger
from key_rotator.types import KeyEvent, KeyEventType


def _event() -> KeyEvent:
    return KeyEvent(
        type=KeyEventType.RATE_LIMIT,
        key_id="key-1",
        timestamp=datetime(2026, 3, 10, 12, 0),
        fields={"reset_source": "fallback"},
    )


def test_json_formatter_merges_event_fields() -> None:
    record = logging.LogRecord("key_rotator.events", logging.INFO, __file__, 1, "rate_limit", None, None)
    record.event = _event().to_dict()

    line = json.loads(JsonFormatter().format(record))

    assert line["message"] == "rate_limit"
    assert line["type"] == "rate_limit"
    assert line["key_id"] == "key-1"
    assert line["reset_source"] == "fallback"
    assert line["timestamp"] == "2026-03-10T12:00:00"


def test_logging_usage_logger_writes_event(caplog) -> None:
    with caplog.at_level(logging.INFO, logger="key_rotator.events"):
        LoggingUsageLogger().emit(_event())

    assert caplog.records[-1].event["reset_source"] == "fallback"


def test_fan_out_isolates_failing_sink(usage_logger) -> None:
    class BrokenLogger:
        def emit(self, event):
            raise RuntimeError("sink down")

    fan_out = FanOutUsageLogger([BrokenLogger(), usage_logger])
    event = _event()

    fan_out.emit(event)

    assert usage_logger.events == [event]
