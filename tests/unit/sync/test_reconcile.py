"""Tests for the pure reconciliation planners."""

from datetime import datetime, timezone

import pytest

from dora_sync.models import (
    CommitRecord,
    IncidentRecord,
    IncidentSeverity,
    IncidentState,
    MemberRecord,
    PullRequestRecord,
    RepositoryRecord,
    WorkflowRunRecord,
)
from dora_sync.storage.tables import Incident, User
from dora_sync.sync.reconcile import (
    apply_incident_changes,
    incident_changes,
    reconcile_commits,
    reconcile_deployments,
    reconcile_incidents,
    reconcile_pull_requests,
    reconcile_repositories,
    reconcile_users,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 5, 1, 11, 30, tzinfo=timezone.utc)


def _commit(sha):
    return CommitRecord(sha=sha, message="m", date=T0)


def _run(run_id):
    return WorkflowRunRecord(
        id=run_id,
        name="deploy",
        head_branch="main",
        head_sha="abc",
        status="completed",
        conclusion="success",
        created_at=T0,
        updated_at=T0,
    )


def _incident_record(state=IncidentState.ACTIVE, severity=IncidentSeverity.SEV3, resolved=None):
    return IncidentRecord(
        id="inc-1",
        title="Checkout down",
        state=state,
        severity=severity,
        created=T0,
        modified=T1,
        resolved=resolved,
    )


def _incident_row():
    return Incident(
        id="inc-1",
        repository_id=1,
        title="Checkout down",
        state="ACTIVE",
        severity="SEV3",
        service_name="checkout",
        start_time=T0,
        created_at=T0,
        resolved_time=None,
        duration_seconds=None,
        updated_at=T1,
    )


class TestInsertOnly:
    def test_commits_split_by_existing(self):
        plan = reconcile_commits([_commit("abc123"), _commit("def456")], {"abc123"})

        assert [c.sha for c in plan.to_insert] == ["def456"]
        assert [c.sha for c in plan.unchanged] == ["abc123"]
        assert plan.to_update == []

    def test_duplicates_in_batch_inserted_once(self):
        plan = reconcile_commits([_commit("a"), _commit("a"), _commit("b")], set())

        assert [c.sha for c in plan.to_insert] == ["a", "b"]

    def test_pull_requests(self):
        prs = [
            PullRequestRecord(id=1, number=1, state="open", created_at=T0),
            PullRequestRecord(id=2, number=2, state="closed", created_at=T0),
        ]

        plan = reconcile_pull_requests(prs, {2})

        assert [p.id for p in plan.to_insert] == [1]

    def test_deployments_never_refreshed(self):
        plan = reconcile_deployments([_run(10), _run(11)], {10, 11})

        assert plan.to_insert == []
        assert len(plan.unchanged) == 2

    def test_repositories_keyed_by_url(self):
        repos = [
            RepositoryRecord(id=1, name="api", full_name="acme/api",
                             html_url="https://github.com/acme/api"),
            RepositoryRecord(id=2, name="web", full_name="acme/web",
                             html_url="https://github.com/acme/web"),
        ]

        plan = reconcile_repositories(repos, {"https://github.com/acme/api"})

        assert [r.html_url for r in plan.to_insert] == ["https://github.com/acme/web"]


class TestIncidents:
    def test_new_incident_inserted(self):
        plan = reconcile_incidents([_incident_record()], {})

        assert len(plan.to_insert) == 1
        assert plan.to_update == []

    def test_identical_incident_unchanged(self):
        plan = reconcile_incidents([_incident_record()], {"inc-1": _incident_row()})

        assert plan.to_insert == []
        assert plan.to_update == []
        assert len(plan.unchanged) == 1

    def test_resolution_produces_changes(self):
        record = _incident_record(
            state=IncidentState.RESOLVED, severity=IncidentSeverity.SEV1, resolved=T2
        )

        changes = incident_changes(_incident_row(), record)

        assert changes == {
            "state": "RESOLVED",
            "severity": "SEV1",
            "resolved_time": T2,
            "duration_seconds": 9000,
        }

    def test_naive_stored_timestamps_compare_equal(self):
        row = _incident_row()
        row.updated_at = T1.replace(tzinfo=None)

        assert incident_changes(row, _incident_record()) == {}

    def test_apply_changes_keeps_identity_fields(self):
        row = _incident_row()
        record = _incident_record(state=IncidentState.RESOLVED, resolved=T2)

        apply_incident_changes(row, incident_changes(row, record))

        assert row.state == "RESOLVED"
        assert row.resolved_time == T2
        assert row.id == "inc-1"
        assert row.created_at == T0
        assert row.start_time == T0

    def test_apply_rejects_immutable_field(self):
        with pytest.raises(ValueError, match="not sync-mutable"):
            apply_incident_changes(_incident_row(), {"created_at": T2})


class TestUsers:
    def _user(self, github_id, login, active=True):
        return User(github_id=github_id, github_username=login, active=active)

    def test_three_way_diff(self):
        roster = [MemberRecord(1, "one"), MemberRecord(2, "two"), MemberRecord(3, "three")]
        local = [self._user(2, "two"), self._user(3, "three-old"), self._user(4, "four")]

        plan = reconcile_users(roster, local)

        assert [m.id for m in plan.to_create] == [1]
        assert [u.github_id for u, _ in plan.to_refresh] == [3]
        assert [u.github_id for u in plan.unchanged] == [2]
        assert [u.github_id for u in plan.to_deactivate] == [4]

    def test_inactive_user_outside_roster_left_alone(self):
        plan = reconcile_users([MemberRecord(1, "one")], [self._user(5, "gone", active=False)])

        assert plan.to_deactivate == []

    def test_inactive_user_back_in_roster_is_refreshed(self):
        plan = reconcile_users([MemberRecord(5, "back")], [self._user(5, "back", active=False)])

        assert [u.github_id for u, _ in plan.to_refresh] == [5]

    def test_avatar_change_is_refreshed(self):
        user = self._user(7, "seven")
        plan = reconcile_users([MemberRecord(7, "seven", "https://avatars/7")], [user])

        assert plan.to_refresh == [(user, MemberRecord(7, "seven", "https://avatars/7"))]
        assert plan.unchanged == []

    def test_matching_roster_is_empty_plan(self):
        plan = reconcile_users([MemberRecord(2, "two")], [self._user(2, "two")])

        assert plan.is_empty
        assert [u.github_id for u in plan.unchanged] == [2]

    def test_empty_plan(self):
        assert reconcile_users([], []).is_empty
