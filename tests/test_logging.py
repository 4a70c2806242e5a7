from __future__ import annotations

import io
import json
import logging

from optionrelay.common.logging import (
    JsonLogFormatter,
    bind_correlation_id,
    get_correlation_id,
    init_structured_logging,
    log_event,
)


def _capture(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonLogFormatter(service="relay-test", env="test", version="1"))
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_log_event_emits_one_json_object_with_extras() -> None:
    logger, stream = _capture("optionrelay.test.events")
    with bind_correlation_id(correlation_id="cid-1"):
        log_event(logger, "relay.order_submitted", order_id="0xabc", interaction=b"\x01\x02")

    (entry,) = _lines(stream)
    assert entry["event_type"] == "relay.order_submitted"
    assert entry["severity"] == "INFO"
    assert entry["service"] == "relay-test"
    assert entry["correlation_id"] == "cid-1"
    assert entry["order_id"] == "0xabc"
    assert entry["interaction"] == "0x0102"


def test_uint256_fields_keep_precision_and_secrets_are_masked() -> None:
    logger, stream = _capture("optionrelay.test.render")
    log_event(
        logger,
        "builder.order_signed",
        salt=2**200 + 1,
        counter=7,
        private_key="0x" + "11" * 32,
        signer={"address": "0xabc", "wallet_secret": "hunter2"},
    )

    (entry,) = _lines(stream)
    assert entry["salt"] == str(2**200 + 1)
    assert entry["counter"] == 7
    assert entry["private_key"] == "[redacted]"
    assert entry["signer"] == {"address": "0xabc", "wallet_secret": "[redacted]"}


def test_severity_maps_to_log_level() -> None:
    logger, stream = _capture("optionrelay.test.severity")
    logger.setLevel(logging.INFO)
    log_event(logger, "relay.fill_prepared", severity="DEBUG")
    log_event(logger, "relay.cancel_refused", severity="warn")

    entries = _lines(stream)
    assert [e["event_type"] for e in entries] == ["relay.cancel_refused"]
    assert entries[0]["severity"] == "WARNING"


def test_nested_binds_keep_the_outer_correlation_id() -> None:
    assert get_correlation_id() is None
    with bind_correlation_id() as outer:
        with bind_correlation_id() as inner:
            assert inner == outer
        assert get_correlation_id() == outer
    assert get_correlation_id() is None


def test_plain_log_lines_default_event_type() -> None:
    logger, stream = _capture("optionrelay.test.plain")
    logger.info("hello\nworld")
    (entry,) = _lines(stream)
    assert entry["event_type"] == "log"
    assert entry["message"] == "hello world"
    assert entry["correlation_id"] is None


def test_init_structured_logging_installs_json_handler(capsys) -> None:
    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        init_structured_logging(service="relay", env="test", version="abc", level="DEBUG")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonLogFormatter)
        logging.getLogger("optionrelay.test.root").debug("ping")
        entry = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert entry["service"] == "relay"
        assert entry["version"] == "abc"
        assert entry["severity"] == "DEBUG"
    finally:
        root.handlers, lvl = saved
        root.setLevel(lvl)
        logging.captureWarnings(False)
