"""
Pytest fixtures for the approval workflow test suite.

Provides:
- A file-backed SQLite database per test (real commits, real SAVEPOINTs)
- Kernel services wired to one session and a deterministic clock
- A service facade wired to the same database
- Structured log capture

Environment Variables:
- DATABASE_URL: optional SQLAlchemy URL.  When unset, each test gets its
  own SQLite file under pytest's tmp_path.
"""

import json
import logging
import os
from datetime import datetime, timezone
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy.orm import Session

from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.domain.approval import (
    ApprovalChainTemplate,
    ApprovalStep,
    FixedApprover,
    Principal,
    RoleApprover,
)
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.services.approval_store import ApprovalStore
from approval_kernel.services.chain_template_service import ChainTemplateService
from approval_kernel.services.delegation_resolver import DelegationResolver
from approval_kernel.services.directory import StaticRoleDirectory
from approval_kernel.services.workflow_engine import WorkflowEngine
from approval_services.facade import ApprovalFacade
from approval_services.notifications import LoggingNotificationGateway

SUBMITTER_ID = "usr-submitter"
MANAGER_ID = "usr-manager"
FINANCE_ID = "usr-finance"
DELEGATE_ID = "usr-delegate"

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, engine):
            engine.decide(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_decision_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    """Engine with freshly created tables, disposed at teardown."""
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'approvals.db'}"
    eng = init_engine_from_url(url, echo=False)
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """A session whose uncommitted work is discarded at teardown.

    SQLite takes the write lock at BEGIN, so tests that also drive the
    facade or extra sessions must not hold this one open.
    """
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock(T0)


@pytest.fixture
def directory() -> StaticRoleDirectory:
    return StaticRoleDirectory({"manager": MANAGER_ID, "finance": FINANCE_ID})


@pytest.fixture
def store(session) -> ApprovalStore:
    return ApprovalStore(session)


@pytest.fixture
def template_service(session, store) -> ChainTemplateService:
    return ChainTemplateService(session, store)


@pytest.fixture
def resolver(session, deterministic_clock) -> DelegationResolver:
    return DelegationResolver(session, deterministic_clock)


@pytest.fixture
def engine(store, template_service, directory, resolver, deterministic_clock) -> WorkflowEngine:
    return WorkflowEngine(store, template_service, directory, resolver, deterministic_clock)


@pytest.fixture
def two_step_template() -> ApprovalChainTemplate:
    """Manager then Finance, both resolved by role."""
    return ApprovalChainTemplate(
        template_id="two_step",
        name="Manager then Finance",
        steps=(
            ApprovalStep(approver=RoleApprover("manager"), name="Manager review"),
            ApprovalStep(approver=RoleApprover("finance"), name="Finance review"),
        ),
    )


@pytest.fixture
def fixed_template() -> ApprovalChainTemplate:
    """Single step bound to a specific user."""
    return ApprovalChainTemplate(
        template_id="fixed_single",
        name="Fixed approver",
        steps=(ApprovalStep(approver=FixedApprover(MANAGER_ID), name="Manager"),),
    )


@pytest.fixture
def registered_templates(template_service, two_step_template, fixed_template):
    template_service.register(two_step_template)
    template_service.register(fixed_template)
    return {t.template_id: t for t in (two_step_template, fixed_template)}


@pytest.fixture
def open_request(engine, registered_templates):
    """Factory: open a two-step request and return the persisted record."""

    def _open(expense_report_id: str = "EXP-1", template_id: str = "two_step"):
        return engine.create_request(expense_report_id, template_id, SUBMITTER_ID).request

    return _open


# =============================================================================
# Facade
# =============================================================================


@pytest.fixture
def notifier() -> LoggingNotificationGateway:
    return LoggingNotificationGateway()


@pytest.fixture
def facade(session_factory, directory, notifier, deterministic_clock):
    fac = ApprovalFacade(session_factory, directory, notifier, deterministic_clock)
    yield fac
    fac.close()


@pytest.fixture
def submitter() -> Principal:
    return Principal(id=SUBMITTER_ID, role="employee")


@pytest.fixture
def manager() -> Principal:
    return Principal(id=MANAGER_ID, role="manager")


@pytest.fixture
def finance() -> Principal:
    return Principal(id=FINANCE_ID, role="finance")


@pytest.fixture
def admin() -> Principal:
    return Principal(id="usr-admin", role="admin")
