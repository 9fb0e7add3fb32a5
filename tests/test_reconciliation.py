"""
Test suite for Companies House reconciliation classification
"""

from datetime import date

import pytest

from filing_workflow.reconciliation import (
    DeadlineDates, ReconciliationOutcome, classify_reconciliation, lookup_failed,
)


@pytest.fixture
def tracked():
    return DeadlineDates(year_end=date(2024, 12, 31), accounts_due=date(2025, 9, 30))


class TestClassification:

    def test_incomplete_tracked_dates(self):
        result = classify_reconciliation(
            DeadlineDates(year_end=date(2024, 12, 31)),
            DeadlineDates(year_end=date(2025, 12, 31), accounts_due=date(2026, 9, 30)),
        )
        assert result.outcome == ReconciliationOutcome.WORKFLOW_DATES_WRONG
        assert result.blocked

    def test_tracked_due_not_after_year_end(self):
        result = classify_reconciliation(
            DeadlineDates(year_end=date(2024, 12, 31), accounts_due=date(2024, 12, 31)),
            DeadlineDates(year_end=date(2025, 12, 31), accounts_due=date(2026, 9, 30)),
        )
        assert result.outcome == ReconciliationOutcome.WORKFLOW_DATES_WRONG

    def test_missing_snapshot_data_is_advisory(self, tracked):
        result = classify_reconciliation(tracked, DeadlineDates(year_end=date(2025, 12, 31)))
        assert result.outcome == ReconciliationOutcome.MISSING_DATA
        assert result.can_proceed
        assert result.requires_acknowledgement

    def test_same_dates_block(self, tracked):
        result = classify_reconciliation(tracked, tracked)
        assert result.outcome == ReconciliationOutcome.SAME_DATES
        assert not result.can_proceed
        assert not result.override_allowed

    def test_forward_dates_confirm_filing(self, tracked):
        snapshot = DeadlineDates(year_end=date(2025, 12, 31), accounts_due=date(2026, 9, 30))
        result = classify_reconciliation(tracked, snapshot)
        assert result.outcome == ReconciliationOutcome.FORWARD_DATES
        assert result.can_proceed
        assert not result.requires_acknowledgement

    def test_backward_dates_block(self, tracked):
        snapshot = DeadlineDates(year_end=date(2023, 12, 31), accounts_due=date(2026, 9, 30))
        result = classify_reconciliation(tracked, snapshot)
        assert result.outcome == ReconciliationOutcome.BACKWARD_DATES
        assert result.blocked
        assert not result.override_allowed

    def test_partial_move_needs_acknowledgement(self, tracked):
        snapshot = DeadlineDates(year_end=date(2024, 12, 31), accounts_due=date(2025, 10, 31))
        result = classify_reconciliation(tracked, snapshot)
        assert result.outcome == ReconciliationOutcome.DIFFERENT_DATES
        assert result.can_proceed
        assert result.requires_acknowledgement

    def test_lookup_failed(self, tracked):
        result = lookup_failed(tracked, "timeout")
        assert result.outcome == ReconciliationOutcome.LOOKUP_FAILED
        assert result.can_proceed
        assert result.snapshot is None
        assert "timeout" in result.message

    def test_to_dict(self, tracked):
        data = classify_reconciliation(tracked, tracked).to_dict()
        assert data["outcome"] == "SAME_DATES"
        assert data["tracked"] == {"year_end": "2024-12-31", "accounts_due": "2025-09-30"}
        assert data["snapshot"]["accounts_due"] == "2025-09-30"


class TestClassificationProperties:

    @pytest.mark.parametrize("year_shift,due_shift,expected", [
        (0, 0, ReconciliationOutcome.SAME_DATES),
        (1, 1, ReconciliationOutcome.FORWARD_DATES),
        (-1, 0, ReconciliationOutcome.BACKWARD_DATES),
        (0, -1, ReconciliationOutcome.BACKWARD_DATES),
        (-1, 1, ReconciliationOutcome.BACKWARD_DATES),
        (1, 0, ReconciliationOutcome.DIFFERENT_DATES),
        (0, 1, ReconciliationOutcome.DIFFERENT_DATES),
    ])
    def test_outcome_by_direction(self, tracked, year_shift, due_shift, expected):
        snapshot = DeadlineDates(
            year_end=tracked.year_end.replace(year=tracked.year_end.year + year_shift),
            accounts_due=tracked.accounts_due.replace(year=tracked.accounts_due.year + due_shift),
        )
        assert classify_reconciliation(tracked, snapshot).outcome == expected
