import io
import json
import logging

from property_tracker.log import configure_logging


def test_json_lines_carry_structured_extras():
    buf = io.StringIO()
    logger = configure_logging("INFO", json_lines=True, stream=buf)
    try:
        logging.getLogger("property_tracker.engine").info(
            "ingested", extra={"property_id": 7, "fields_changed": ["status"], "source_name": "realtor"}
        )
        logging.getLogger("property_tracker.engine").debug("hidden")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)

    lines = [json.loads(line) for line in buf.getvalue().splitlines()]
    assert len(lines) == 1
    assert lines[0]["message"] == "ingested"
    assert lines[0]["level"] == "INFO"
    assert lines[0]["logger"] == "property_tracker.engine"
    assert lines[0]["property_id"] == 7
    assert lines[0]["fields_changed"] == ["status"]


def test_plain_format_by_default():
    buf = io.StringIO()
    logger = configure_logging("WARNING", stream=buf)
    try:
        logging.getLogger("property_tracker.history").warning("late claim ignored")
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)
    text = buf.getvalue()
    assert "WARNING property_tracker.history: late claim ignored" in text
    assert not text.startswith("{")
