import json
import logging

import pytest
from prometheus_client import REGISTRY

from common.logging import JsonFormatter, configure_logging
from ledger_observability.metrics import get_metric, ledger_transitions_total
from ledger_observability.tracking import track_operation
from lending_ledger.errors import InvalidAmountError, InvalidTransitionError
from tests.factories import LENDER, T0


def _count(entity, action, outcome):
    return (
        REGISTRY.get_sample_value(
            "ledger_transitions_total", {"entity": entity, "action": action, "outcome": outcome}
        )
        or 0.0
    )


def test_json_formatter_includes_extras():
    record = logging.LogRecord("lending_ledger.offers", logging.INFO, __file__, 1, "offer %s", ("o1",), None)
    record.entity = "loan_offer"
    record.entity_id = "o1"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "offer o1"
    assert payload["level"] == "INFO"
    assert payload["entity"] == "loan_offer"
    assert payload["entity_id"] == "o1"
    assert "user_id" not in payload


def test_configure_logging_json_stamps_service(capsys):
    configure_logging("json", service_name="lending_ledger")
    try:
        logging.getLogger("lending_ledger.test").info("hello", extra={"user_id": "u1"})
        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["service"] == "lending_ledger"
        assert payload["user_id"] == "u1"
    finally:
        for handler in list(logging.getLogger().handlers):
            logging.getLogger().removeHandler(handler)


def test_track_operation_counts_outcomes():
    @track_operation("sample", "run")
    def run(kind):
        if kind == "rejected":
            raise InvalidAmountError("no")
        if kind == "error":
            raise RuntimeError("boom")
        return kind

    before = {o: _count("sample", "run", o) for o in ("success", "rejected", "error")}
    assert run("success") == "success"
    with pytest.raises(InvalidAmountError):
        run("rejected")
    with pytest.raises(RuntimeError):
        run("error")
    for outcome in ("success", "rejected", "error"):
        assert _count("sample", "run", outcome) == before[outcome] + 1


def test_service_calls_are_tracked(flow):
    before = _count("loan_offer", "close", "rejected")
    created = flow.create_offer()
    flow.offers.close_offer(created.offer.id, LENDER, T0)
    with pytest.raises(InvalidTransitionError):
        flow.offers.close_offer(created.offer.id, LENDER, T0)
    assert _count("loan_offer", "close", "rejected") == before + 1


def test_get_metric_returns_registered_collector():
    from prometheus_client import Counter

    again = get_metric(
        Counter,
        "ledger_transitions_total",
        "State-machine operations executed by the ledger",
        ["entity", "action", "outcome"],
    )
    assert again is ledger_transitions_total
