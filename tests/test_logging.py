import json
import logging

from shared.core import bind_event_context, current_context
from shared.core.logging_config import DurationFilter, RedactSecretsFilter, StructuredFormatter


def make_record(msg, args=None, **extra):
    record = logging.LogRecord("stockledger.test", logging.INFO, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_identity_fields_and_event_context():
    formatter = StructuredFormatter("stockledger-worker", "test", "9.9.9")
    record = make_record("inventory_sale", extra_fields={"movement_id": 3})

    with bind_event_context("order_item_created:order_item:42"):
        entry = json.loads(formatter.format(record))

    assert entry["service"] == "stockledger-worker"
    assert entry["version"] == "9.9.9"
    assert entry["trace"] == {"event_id": "order_item_created:order_item:42"}
    assert entry["custom"] == {"movement_id": 3}
    assert current_context() == {}


def test_secrets_are_masked():
    record = make_record("connecting with api_key=%s token: abc", ("ty-secret",))

    RedactSecretsFilter().filter(record)

    assert record.getMessage() == "connecting with api_key=*** token: ***"


def test_duration_is_reported_in_milliseconds():
    record = make_record("GET /inventory/levels -> 200", duration=0.25)

    DurationFilter().filter(record)
    entry = json.loads(StructuredFormatter("stockledger").format(record))

    assert entry["duration_ms"] == 250.0
