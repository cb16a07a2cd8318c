"""
Tests for ApprovalStore -- versioned persistence.

Covers:
- save() insert / update round trip, version increments by one
- stale expected_version writes nothing
- duplicate insert; one open request per expense report
- history rows are append-only at the ORM level
- invariant violations are refused before any write
- query() by assigned approver only sees the current step
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from approval_kernel.domain.approval import (
    ApprovalChainTemplate,
    ApprovalQuery,
    ApprovalStep,
    Decision,
    OverallStatus,
    RoleApprover,
)
from approval_kernel.domain.workflow import apply_decision, open_request
from approval_kernel.exceptions import (
    ApprovalNotFoundError,
    DuplicateApprovalRequestError,
    ImmutabilityViolationError,
    StaleStateError,
)
from approval_kernel.models.approval import ApprovalHistoryModel, ApprovalRequestModel

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

TEMPLATE = ApprovalChainTemplate(
    template_id="two_step",
    steps=(
        ApprovalStep(approver=RoleApprover("manager"), name="Manager"),
        ApprovalStep(approver=RoleApprover("finance"), name="Finance"),
    ),
)


def new_request(report="EXP-1", approver="bob"):
    return open_request(
        request_id=uuid4(),
        expense_report_id=report,
        submitter_id="alice",
        template=TEMPLATE,
        first_approver_id=approver,
        at=T0,
    ).request


def approve(request, actor="bob"):
    return apply_decision(
        request,
        actor_id=actor,
        decision=Decision.APPROVE,
        comment="ok",
        at=T0 + timedelta(minutes=1),
        next_approver_id="carol",
    ).request


class TestSaveAndLoad:
    def test_insert_then_load(self, store):
        saved = store.save(new_request(), expected_version=None)
        loaded, version = store.load(saved.request_id)

        assert version == 1
        assert saved.version == 1
        assert loaded == saved

    def test_update_increments_version(self, store):
        saved = store.save(new_request(), expected_version=None)
        updated = store.save(approve(saved), expected_version=1)

        loaded, version = store.load(saved.request_id)
        assert version == 2 == updated.version
        assert loaded.current_step_index == 1
        assert loaded.steps[1].assigned_approver_id == "carol"
        assert [h.sequence for h in loaded.history] == [1]

    def test_stale_version_writes_nothing(self, store):
        saved = store.save(new_request(), expected_version=None)
        store.save(approve(saved), expected_version=1)

        with pytest.raises(StaleStateError) as exc_info:
            store.save(approve(saved), expected_version=1)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.current_version == 2

        loaded, version = store.load(saved.request_id)
        assert version == 2
        assert len(loaded.history) == 1

    def test_duplicate_insert_is_stale(self, store):
        request = new_request()
        store.save(request, expected_version=None)
        with pytest.raises(StaleStateError, match="already exists"):
            store.save(request, expected_version=None)

    def test_second_open_request_for_report_refused(self, store, session):
        first = store.save(new_request("EXP-1"), expected_version=None)
        with pytest.raises(DuplicateApprovalRequestError) as exc_info:
            store.save(new_request("EXP-1"), expected_version=None)
        assert exc_info.value.expense_report_id == "EXP-1"

        rows = session.execute(select(ApprovalRequestModel)).scalars().all()
        assert [r.request_id for r in rows] == [first.request_id]

    def test_report_reopens_once_closed(self, store):
        first = store.save(new_request("EXP-1"), expected_version=None)
        rejected = apply_decision(
            first, actor_id="bob", decision=Decision.REJECT, comment="no",
            at=T0 + timedelta(minutes=1),
        ).request
        store.save(rejected, expected_version=1)

        second = store.save(new_request("EXP-1"), expected_version=None)
        assert second.version == 1
        assert len(store.query(ApprovalQuery(expense_report_id="EXP-1"))) == 2
        open_only = store.query(ApprovalQuery(expense_report_id="EXP-1", open_only=True))
        assert [r.request_id for r in open_only] == [second.request_id]

    def test_update_of_missing_request(self, store):
        with pytest.raises(ApprovalNotFoundError):
            store.save(new_request(), expected_version=1)

    def test_load_missing(self, store):
        with pytest.raises(ApprovalNotFoundError):
            store.load(uuid4())

    def test_invariant_violation_refused(self, store, session):
        bad = replace(new_request(), overall_status=OverallStatus.APPROVED)
        with pytest.raises(ValueError, match="diverges"):
            store.save(bad, expected_version=None)
        rows = session.execute(select(ApprovalRequestModel)).scalars().all()
        assert rows == []


class TestHistoryImmutability:
    def test_history_row_cannot_be_modified(self, store, session):
        saved = store.save(new_request(), expected_version=None)
        store.save(approve(saved), expected_version=1)

        row = session.execute(select(ApprovalHistoryModel)).scalar_one()
        row.comment = "rewritten"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()

    def test_history_row_cannot_be_deleted(self, store, session):
        saved = store.save(new_request(), expected_version=None)
        store.save(approve(saved), expected_version=1)

        row = session.execute(select(ApprovalHistoryModel)).scalar_one()
        session.delete(row)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
        session.rollback()


class TestQuery:
    def test_assigned_approver_sees_only_current_step(self, store):
        first = store.save(new_request("EXP-1"), expected_version=None)
        second = store.save(new_request("EXP-2"), expected_version=None)
        store.save(approve(first), expected_version=1)

        bob = store.query(ApprovalQuery(assigned_approver_id="bob"))
        carol = store.query(ApprovalQuery(assigned_approver_id="carol"))

        assert [r.request_id for r in bob] == [second.request_id]
        assert [r.request_id for r in carol] == [first.request_id]

    def test_filter_by_status_and_template(self, store):
        store.save(new_request(), expected_version=None)
        assert len(store.query(ApprovalQuery(overall_status=OverallStatus.PENDING))) == 1
        assert store.query(ApprovalQuery(overall_status=OverallStatus.APPROVED)) == []
        assert store.count_for_template("two_step") == 1
        assert store.count_for_template("two_step", open_only=True) == 1
        assert store.count_for_template("other") == 0
