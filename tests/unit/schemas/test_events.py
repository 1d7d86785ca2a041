"""Tests for realtime change events and cycle reports."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tradedesk.schemas.enums import ChangeEventType
from tradedesk.schemas.events import ChangeEvent
from tradedesk.schemas.live import PortfolioRisk, ReconciliationReport

NOW = datetime(2026, 2, 9, 14, 30, 0, tzinfo=timezone.utc)


class TestChangeEvent:
    """{eventType, new, old} payloads."""

    def test_close_update(self):
        event = ChangeEvent.model_validate({
            "eventType": "update",
            "new": {"id": 7, "symbol": "BTCUSDT", "status": "closed"},
            "old": {"id": 7, "status": "open"},
        })
        assert event.event_type == ChangeEventType.UPDATE
        assert event.position_id == "7"
        assert event.is_close
        assert not event.is_open_row

    def test_delete_uses_old_row(self):
        event = ChangeEvent.model_validate({"eventType": "DELETE", "new": None, "old": {"id": "p"}})
        assert event.new == {}
        assert event.position_id == "p"
        assert not event.is_close

    def test_insert_closed_row_is_not_a_close(self):
        event = ChangeEvent(event_type="INSERT", new={"id": "p", "status": "closed"})
        assert not event.is_close

    def test_missing_status_counts_as_open(self):
        assert ChangeEvent(event_type="UPDATE", new={"id": "p"}).is_open_row

    def test_unknown_event_type(self):
        with pytest.raises(ValidationError):
            ChangeEvent.model_validate({"eventType": "TRUNCATE"})


class TestReconciliationReport:
    """Cycle report helpers."""

    def test_requires_timezone(self):
        with pytest.raises(ValidationError, match="timezone"):
            ReconciliationReport(
                cycle_id="c", started_at=datetime(2026, 2, 9), finished_at=NOW,
            )

    def test_summary(self):
        report = ReconciliationReport(
            cycle_id="c1",
            started_at=NOW,
            finished_at=NOW + timedelta(milliseconds=250),
            risk=PortfolioRisk(total_unrealized_pnl=1.234),
            errors={"BTCUSDT": ["ticker", "position"], "account": ["account"]},
            skipped=["ETHUSDT"],
        )
        assert report.summary() == {
            "cycle_id": "c1",
            "positions": 0,
            "errors": 3,
            "skipped": 1,
            "discarded": 0,
            "duration_seconds": 0.25,
            "total_unrealized_pnl": 1.23,
        }
