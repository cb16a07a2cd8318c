"""Pure delegation rule evaluation (domain/delegation.py)."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import DelegationRule
from approval_kernel.domain.delegation import (
    active_rules,
    resolve_acting_approver,
    windows_overlap,
)
from approval_kernel.exceptions import AmbiguousDelegationError

T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def rule(approver="bob", delegate="erin", start=T0, until=None):
    return DelegationRule(
        rule_id=uuid4(),
        approver_id=approver,
        delegate_id=delegate,
        active_from=start,
        active_until=until,
    )


class TestWindow:
    def test_half_open_window(self):
        r = rule(until=T0 + timedelta(days=7))
        assert r.covers(T0)
        assert r.covers(T0 + timedelta(days=6, hours=23))
        assert not r.covers(T0 + timedelta(days=7))
        assert not r.covers(T0 - timedelta(seconds=1))

    def test_open_ended_window(self):
        assert rule().covers(T0 + timedelta(days=3650))

    def test_adjacent_windows_do_not_overlap(self):
        first = rule(until=T0 + timedelta(days=1))
        second = rule(start=T0 + timedelta(days=1))
        assert not windows_overlap(first, second)
        assert windows_overlap(first, rule(start=T0 + timedelta(hours=12)))


class TestResolve:
    def test_no_rule_returns_approver(self):
        assert resolve_acting_approver([], "bob", T0) == "bob"

    def test_active_rule_returns_delegate(self):
        assert resolve_acting_approver([rule()], "bob", T0) == "erin"

    def test_expired_rule_ignored(self):
        expired = rule(start=T0 - timedelta(days=2), until=T0 - timedelta(days=1))
        assert resolve_acting_approver([expired], "bob", T0) == "bob"

    def test_other_approvers_rules_ignored(self):
        assert resolve_acting_approver([rule(approver="dana")], "bob", T0) == "bob"

    def test_single_hop_only(self):
        rules = [rule(), rule(approver="erin", delegate="frank")]
        assert resolve_acting_approver(rules, "bob", T0) == "erin"

    def test_overlap_is_ambiguous(self):
        rules = [rule(), rule(delegate="frank")]
        with pytest.raises(AmbiguousDelegationError) as exc_info:
            resolve_acting_approver(rules, "bob", T0)
        assert len(exc_info.value.rule_ids) == 2
        assert exc_info.value.approver_id == "bob"

    def test_active_rules_sorted_by_start(self):
        later = rule(start=T0 - timedelta(hours=1))
        earlier = rule(start=T0 - timedelta(days=1))
        assert active_rules([later, earlier], "bob", T0) == [earlier, later]
