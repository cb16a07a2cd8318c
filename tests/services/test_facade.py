"""
Tests for ApprovalFacade -- the external entry point.

Covers:
- status mapping for every operation (201/200/204/207 and 400/403/404/409/504)
- notifications dispatched after commit; delivery failure never undoes
  the approval
- one open request per report (409); no self-approval, admin-only first
  approver override (403)
- a facade built from the default configuration reaches submitters
- operation timeout returns 504 with outcome "unknown"
- administration: delegations (owner or admin), templates (admin only)
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from approval_config.schema import ServiceSettings
from approval_kernel.domain.approval import Principal
from approval_services.facade import ApprovalFacade
from approval_services.notifications import DeliveryResult

from conftest import DELEGATE_ID, FINANCE_ID, MANAGER_ID, SUBMITTER_ID, T0

TWO_STEP = {
    "template_id": "two_step",
    "name": "Manager then Finance",
    "criteria": {"priority": 100},
    "steps": [
        {"name": "Manager review", "role": "manager"},
        {"name": "Finance review", "role": "finance"},
    ],
}

SMALL_TRAVEL = {
    "template_id": "small_travel",
    "criteria": {"department": "travel", "max_amount": "500", "priority": 10},
    "steps": [{"name": "Manager review", "approver_id": MANAGER_ID}],
}


@pytest.fixture
def templates(facade, admin):
    for payload in (TWO_STEP, SMALL_TRAVEL):
        assert facade.register_template(admin, payload).status_code == 201


@pytest.fixture
def created(facade, submitter, templates):
    response = facade.create_approval(
        submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
    )
    assert response.status_code == 201
    return response.body["approval"]


class RaisingGateway:
    def send(self, recipient_id, template_kind, payload):
        raise RuntimeError("smtp relay unreachable")


class TestCreate:
    def test_create_returns_201_and_notifies(self, facade, submitter, templates, notifier):
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
        )

        assert response.status_code == 201
        approval = response.body["approval"]
        assert approval["overall_status"] == "pending"
        assert approval["version"] == 1
        assert approval["submitter_id"] == SUBMITTER_ID
        assert response.body["notifications"] == [
            {
                "recipient_id": MANAGER_ID,
                "template_kind": "approval_required",
                "delivered": True,
                "attempts": 1,
                "error": None,
            }
        ]
        assert [m.recipient_id for m in notifier.sent] == [MANAGER_ID]

    def test_template_selected_by_amount(self, facade, submitter, templates):
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-2", "amount": "120.50", "department": "travel"},
        )
        assert response.body["approval"]["chain_template_id"] == "small_travel"

    def test_no_matching_template(self, facade, submitter, admin):
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-3", "amount": "10"},
        )
        assert response.status_code == 400
        assert response.body["error"] == "INVALID_CHAIN"

    def test_unknown_template_is_404(self, facade, submitter, templates):
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-1", "chain_template_id": "missing"},
        )
        assert response.status_code == 404

    def test_missing_report_id_is_400(self, facade, submitter, templates):
        response = facade.create_approval(submitter, {"chain_template_id": "two_step"})
        assert response.status_code == 400
        assert response.body["field"] == "expense_report_id"

    def test_initial_approver_override_is_admin_only(self, facade, submitter, admin, templates):
        payload = {
            "expense_report_id": "EXP-1",
            "chain_template_id": "two_step",
            "initial_approver_id": "usr-other",
        }
        denied = facade.create_approval(submitter, payload)
        assert denied.status_code == 403
        assert denied.body["error"] == "NOT_AUTHORIZED"
        assert facade.list_pending(Principal(id="usr-other", role="employee")).body["approvals"] == []

        allowed = facade.create_approval(admin, payload)
        assert allowed.status_code == 201
        assert allowed.body["approval"]["steps"][0]["assigned_approver_id"] == "usr-other"

    def test_submitter_cannot_route_to_themself_as_admin(self, facade, admin, templates):
        response = facade.create_approval(
            admin,
            {
                "expense_report_id": "EXP-1",
                "chain_template_id": "two_step",
                "initial_approver_id": admin.id,
            },
        )
        assert response.status_code == 403
        assert response.body["error"] == "SELF_APPROVAL_FORBIDDEN"

    def test_fixed_template_naming_submitter_is_403(self, facade, manager, templates):
        response = facade.create_approval(
            manager, {"expense_report_id": "EXP-1", "chain_template_id": "small_travel"},
        )
        assert response.status_code == 403
        assert response.body["error"] == "SELF_APPROVAL_FORBIDDEN"
        assert response.body["step_index"] == 0
        assert facade.list_pending(manager).body["approvals"] == []

    def test_duplicate_open_request_is_409(self, facade, submitter, created):
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-1", "chain_template_id": "small_travel"},
        )
        assert response.status_code == 409
        assert response.body["error"] == "DUPLICATE_APPROVAL_REQUEST"
        assert response.body["existing_request_id"] == created["request_id"]


class TestDecide:
    def test_full_chain(self, facade, manager, finance, created):
        rid = created["request_id"]

        first = facade.decide(manager, rid, {"decision": "approve", "comment": "ok"})
        assert first.status_code == 200
        assert first.body["approval"]["current_step_index"] == 1
        assert first.body["notifications"][0]["recipient_id"] == FINANCE_ID

        second = facade.decide(finance, rid, {"decision": "approve", "expected_version": 2})
        assert second.status_code == 200
        assert second.body["approval"]["overall_status"] == "approved"
        assert len(second.body["approval"]["history"]) == 2

    def test_stranger_is_403(self, facade, created):
        stranger = Principal(id="usr-stranger", role="employee")
        response = facade.decide(stranger, created["request_id"], {"decision": "approve"})
        assert response.status_code == 403
        assert response.body["error"] == "NOT_AUTHORIZED"

    def test_submitter_cannot_decide_own_report(self, facade, submitter, created):
        response = facade.decide(submitter, created["request_id"], {"decision": "approve"})
        assert response.status_code == 403
        assert response.body["error"] == "SELF_APPROVAL_FORBIDDEN"
        fetched = facade.get_approval(submitter, created["request_id"]).body["approval"]
        assert fetched["version"] == 1

    def test_claimed_delegation_is_not_trusted(self, facade, created):
        claimant = Principal(id=DELEGATE_ID, role="employee", is_delegate_of=MANAGER_ID)
        response = facade.decide(claimant, created["request_id"], {"decision": "approve"})
        assert response.status_code == 403

    def test_stale_version_is_409(self, facade, manager, created):
        response = facade.decide(
            manager, created["request_id"], {"decision": "approve", "expected_version": 5},
        )
        assert response.status_code == 409
        assert response.body["error"] == "STALE_STATE"
        assert response.body["current_version"] == 1

    def test_terminal_is_409(self, facade, manager, created):
        facade.decide(manager, created["request_id"], {"decision": "reject"})
        response = facade.decide(manager, created["request_id"], {"decision": "approve"})
        assert response.status_code == 409
        assert response.body["error"] == "APPROVAL_ALREADY_RESOLVED"

    def test_unknown_request_is_404(self, facade, manager, templates):
        response = facade.decide(manager, str(uuid4()), {"decision": "approve"})
        assert response.status_code == 404

    def test_bad_payloads_are_400(self, facade, manager, created):
        assert facade.decide(manager, "not-a-uuid", {"decision": "approve"}).status_code == 400
        bad_decision = facade.decide(manager, created["request_id"], {"decision": "maybe"})
        assert bad_decision.status_code == 400
        assert bad_decision.body["field"] == "decision"
        bad_version = facade.decide(
            manager, created["request_id"], {"decision": "approve", "expected_version": "1"},
        )
        assert bad_version.status_code == 400

    def test_info_round_trip(self, facade, manager, submitter, created):
        rid = created["request_id"]
        asked = facade.decide(manager, rid, {"decision": "request_info", "comment": "client?"})
        assert asked.body["approval"]["overall_status"] == "info_requested"

        blocked = facade.decide(manager, rid, {"decision": "approve"})
        assert blocked.status_code == 409
        assert blocked.body["error"] == "INVALID_APPROVAL_TRANSITION"

        assert facade.resume_after_info(manager, rid).status_code == 403
        resumed = facade.resume_after_info(submitter, rid, {"comment": "client X"})
        assert resumed.status_code == 200
        assert resumed.body["notifications"][0]["template_kind"] == "info_provided"


class TestNotificationIsolation:
    def test_delivery_failure_does_not_roll_back(
        self, session_factory, directory, deterministic_clock, submitter, manager, admin,
    ):
        facade = ApprovalFacade(session_factory, directory, RaisingGateway(), deterministic_clock)
        try:
            facade.register_template(admin, TWO_STEP)
            created = facade.create_approval(
                submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
            )
            assert created.status_code == 201
            assert created.body["notifications"][0]["delivered"] is False

            decided = facade.decide(manager, created.body["approval"]["request_id"], {"decision": "reject"})
            assert decided.status_code == 200
            assert "smtp relay unreachable" in decided.body["notifications"][0]["error"]

            fetched = facade.get_approval(submitter, created.body["approval"]["request_id"])
            assert fetched.body["approval"]["overall_status"] == "rejected"
        finally:
            facade.close()

    def test_retries_use_configured_attempts(
        self, session_factory, directory, deterministic_clock, submitter, admin,
    ):
        class CountingGateway:
            calls = 0

            def send(self, recipient_id, template_kind, payload):
                CountingGateway.calls += 1
                return DeliveryResult.failed("busy")

        settings = ServiceSettings(notification_max_attempts=3)
        facade = ApprovalFacade(
            session_factory, directory, CountingGateway(), deterministic_clock, settings,
        )
        try:
            facade.register_template(admin, TWO_STEP)
            response = facade.create_approval(
                submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
            )
            assert response.body["notifications"][0]["attempts"] == 3
            assert CountingGateway.calls == 3
        finally:
            facade.close()


class TestFromConfig:
    @pytest.fixture
    def configured(self, session_factory, deterministic_clock):
        from approval_config import get_active_config

        config = get_active_config()
        fac = ApprovalFacade.from_config(session_factory, config, clock=deterministic_clock)
        fac.seed_templates(config)
        yield fac
        fac.close()

    def test_rejection_notice_reaches_submitter(self, configured, captured_logs):
        employee = Principal(id="usr-employee", role="employee")
        manager = Principal(id="usr-manager", role="manager")

        created = configured.create_approval(
            employee, {"expense_report_id": "EXP-7", "amount": "120", "department": "travel"},
        )
        assert created.body["approval"]["chain_template_id"] == "travel_small"

        rejected = configured.decide(
            manager, created.body["approval"]["request_id"], {"decision": "reject"},
        )
        assert rejected.status_code == 200
        assert rejected.body["notifications"] == [
            {
                "recipient_id": "usr-employee",
                "template_kind": "rejected",
                "delivered": True,
                "attempts": 1,
                "error": None,
            }
        ]
        logged = [
            r for r in captured_logs()
            if r["message"] == "notification_logged" and r["recipient_id"] == "usr-employee"
        ]
        assert logged[0]["to_email"] == "usr-employee@example.com"


class TestTimeout:
    def test_slow_operation_returns_504(
        self, session_factory, deterministic_clock, notifier, submitter, admin,
    ):
        release = threading.Event()

        class SlowDirectory:
            def approver_for_role(self, role, submitter_id):
                release.wait(5)
                return MANAGER_ID

        settings = ServiceSettings(operation_timeout_seconds=0.2)
        facade = ApprovalFacade(
            session_factory, SlowDirectory(), notifier, deterministic_clock, settings,
        )
        try:
            facade.register_template(admin, TWO_STEP)
            response = facade.create_approval(
                submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
            )
            assert response.status_code == 504
            assert response.body["error"] == "OPERATION_TIMEOUT"
            assert response.body["outcome"] == "unknown"
            assert notifier.sent == []
        finally:
            release.set()
            facade.close()

    def test_timeout_on_decide_points_at_refetch(
        self, session_factory, deterministic_clock, notifier, submitter, manager, admin,
    ):
        release = threading.Event()
        release.set()

        class GatedDirectory:
            def approver_for_role(self, role, submitter_id):
                release.wait(5)
                return {"manager": MANAGER_ID, "finance": FINANCE_ID}[role]

        settings = ServiceSettings(operation_timeout_seconds=0.2)
        facade = ApprovalFacade(
            session_factory, GatedDirectory(), notifier, deterministic_clock, settings,
        )
        try:
            facade.register_template(admin, TWO_STEP)
            created = facade.create_approval(
                submitter, {"expense_report_id": "EXP-1", "chain_template_id": "two_step"},
            )
            rid = created.body["approval"]["request_id"]

            release.clear()
            response = facade.decide(manager, rid, {"decision": "approve"})
            assert response.status_code == 504
            assert response.body["refetch"] == f"/approvals/{rid}"
        finally:
            release.set()
            facade.close()


class TestBatch:
    def test_batch_multi_status(self, facade, submitter, manager, admin, templates):
        facade.register_template(
            admin, {"template_id": "other_fixed", "steps": [{"name": "Other", "approver_id": "usr-other"}]},
        )
        ids = []
        for report, template_id in (
            ("EXP-1", "small_travel"), ("EXP-2", "other_fixed"), ("EXP-3", "small_travel"),
        ):
            payload = {"expense_report_id": report, "chain_template_id": template_id}
            ids.append(facade.create_approval(submitter, payload).body["approval"]["request_id"])

        response = facade.apply_batch(
            manager, {"decision": "approve", "comment": "bulk", "request_ids": ids},
        )

        assert response.status_code == 207
        assert response.body["status"] == "partially_completed"
        assert [i["status_code"] for i in response.body["items"]] == [200, 403, 200]
        assert response.body["items"][1]["error"]["error"] == "NOT_AUTHORIZED"
        assert [n["recipient_id"] for n in response.body["notifications"]] == [
            SUBMITTER_ID, SUBMITTER_ID,
        ]

    def test_batch_refuses_request_info(self, facade, manager, templates):
        response = facade.apply_batch(
            manager, {"decision": "request_info", "request_ids": [str(uuid4())]},
        )
        assert response.status_code == 400

    def test_batch_requires_list(self, facade, manager, templates):
        response = facade.apply_batch(manager, {"decision": "approve", "request_ids": "x"})
        assert response.status_code == 400


class TestQueries:
    def test_get_unknown_is_404(self, facade, submitter, templates):
        assert facade.get_approval(submitter, str(uuid4())).status_code == 404

    def test_list_pending_includes_delegated(self, facade, manager, created):
        delegate = Principal(id=DELEGATE_ID, role="employee")
        assert facade.list_pending(delegate).body["approvals"] == []

        facade.add_delegation(manager, {"delegate_id": DELEGATE_ID})
        pending = facade.list_pending(delegate).body["approvals"]
        assert [a["request_id"] for a in pending] == [created["request_id"]]
        assert facade.list_pending(manager).body["approvals"][0]["request_id"] == created["request_id"]


class TestAdministration:
    def test_own_delegation_then_remove(self, facade, manager):
        response = facade.add_delegation(
            manager,
            {
                "delegate_id": DELEGATE_ID,
                "active_from": T0.isoformat(),
                "active_until": (T0 + timedelta(days=7)).isoformat(),
            },
        )
        assert response.status_code == 201
        rule = response.body["delegation"]
        assert rule["approver_id"] == MANAGER_ID
        assert rule["created_by"] == MANAGER_ID

        assert facade.remove_delegation(manager, rule["rule_id"]).status_code == 204
        assert facade.remove_delegation(manager, rule["rule_id"]).status_code == 404

    def test_delegating_for_someone_else_requires_admin(self, facade, finance, admin):
        payload = {"approver_id": MANAGER_ID, "delegate_id": DELEGATE_ID}
        assert facade.add_delegation(finance, payload).status_code == 403
        response = facade.add_delegation(admin, payload)
        assert response.status_code == 201
        rule_id = response.body["delegation"]["rule_id"]
        assert facade.remove_delegation(finance, rule_id).status_code == 403

    def test_invalid_delegations_are_400(self, facade, manager):
        assert facade.add_delegation(manager, {"delegate_id": MANAGER_ID}).status_code == 400
        naive = facade.add_delegation(
            manager, {"delegate_id": DELEGATE_ID, "active_from": "2024-01-01T00:00:00"},
        )
        assert naive.status_code == 400
        assert naive.body["field"] == "active_from"

    def test_register_template_admin_only(self, facade, manager, admin):
        assert facade.register_template(manager, TWO_STEP).status_code == 403
        assert facade.register_template(admin, {"template_id": "x", "steps": []}).status_code == 400
        assert facade.register_template(admin, {"name": "no id"}).status_code == 400

    def test_register_template_in_use_is_409(self, facade, admin, created):
        changed = dict(TWO_STEP, steps=TWO_STEP["steps"][:1])
        response = facade.register_template(admin, changed)
        assert response.status_code == 409
        assert response.body["error"] == "TEMPLATE_IN_USE"

    def test_seed_templates(self, facade, submitter):
        from approval_config import get_active_config

        assert facade.seed_templates(get_active_config()) == 3
        response = facade.create_approval(
            submitter, {"expense_report_id": "EXP-1", "amount": "9000"},
        )
        assert response.body["approval"]["chain_template_id"] == "high_value"
