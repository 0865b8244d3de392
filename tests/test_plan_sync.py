"""Tests for planbridge.services.plan_sync_service: governance → sandbox import.

Test strategy
-------------
Governance rows are created directly; the importer reads them through the
`governance_store` singleton. Failures are simulated with patch.object on
that singleton.

Coverage
--------
    1. first import creates committed items level by level
    2. second run with no governance change is a no-op
    3. governance field edits overwrite sandbox edits
    4. deleting a governance milestone soft-deletes the linked sub-tree
    5. a run aborted at the task level keeps earlier levels; re-run fills the gap
    6. every run writes a sync log row
"""

from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy import select

from planbridge.core.exceptions import StoreUnavailableError
from planbridge.integrations.governance_store import governance_store
from planbridge.models import db
from planbridge.models.governance import Deliverable, DeliverableTask, Milestone
from planbridge.models.planning import PlanItem, PlanSyncLog
from planbridge.services import plan_sync_service as sync_svc


# ── Helper factories ─────────────────────────────────────────────────────────


def _make_milestone(project_id=1, name="M1", **kw) -> Milestone:
    m = Milestone(project_id=project_id, name=name, **kw)
    db.session.add(m)
    db.session.commit()
    return m


def _make_deliverable(milestone, name="D1", **kw) -> Deliverable:
    d = Deliverable(project_id=milestone.project_id, milestone_id=milestone.id, name=name, **kw)
    db.session.add(d)
    db.session.commit()
    return d


def _make_task(deliverable, name="T1", sort_order=1, **kw) -> DeliverableTask:
    t = DeliverableTask(
        project_id=deliverable.project_id, deliverable_id=deliverable.id,
        name=name, sort_order=sort_order, **kw,
    )
    db.session.add(t)
    db.session.commit()
    return t


def _items(project_id=1, include_deleted=False):
    stmt = select(PlanItem).where(PlanItem.project_id == project_id)
    if not include_deleted:
        stmt = stmt.where(PlanItem.is_deleted.is_(False))
    return list(db.session.execute(stmt.order_by(PlanItem.sort_order)).scalars().all())


def _snapshot_rows(project_id=1):
    return [i.to_dict() for i in _items(project_id, include_deleted=True)]


def _linked(authority_id) -> PlanItem:
    for column in ("authority_milestone_id", "authority_deliverable_id", "authority_task_id"):
        item = db.session.execute(
            select(PlanItem).where(getattr(PlanItem, column) == authority_id)
        ).scalars().first()
        if item is not None:
            return item
    raise AssertionError(f"no plan item linked to {authority_id}")


# ── Tests ────────────────────────────────────────────────────────────────────


class TestFirstImport:

    def test_single_milestone_into_empty_sandbox(self):
        """One unlocked milestone → one committed milestone item, imported=1."""
        m = _make_milestone(name="M1", status="AtRisk", start_date=date(2026, 1, 1))

        result = sync_svc.sync_from_authority(1)

        assert result["imported"] == 1
        assert result["updated"] == 0
        assert result["deleted"] == 0
        items = _items()
        assert len(items) == 1
        item = items[0]
        assert item.item_type == "milestone"
        assert item.is_committed is True
        assert item.authority_milestone_id == m.id
        assert item.status == "on_hold"
        assert item.start_date == date(2026, 1, 1)
        assert item.last_synced_at is not None

    def test_levels_attach_to_previous_level(self):
        m = _make_milestone()
        d = _make_deliverable(m, due_date=date(2026, 2, 1))
        t = _make_task(d, is_complete=True)

        result = sync_svc.sync_from_authority(1)

        assert result["imported"] == 3
        assert result["by_level"]["tasks"]["imported"] == 1
        m_item, d_item, t_item = _linked(m.id), _linked(d.id), _linked(t.id)
        assert d_item.parent_id == m_item.id
        assert t_item.parent_id == d_item.id
        assert (m_item.indent_level, d_item.indent_level, t_item.indent_level) == (0, 1, 2)
        assert d_item.end_date == date(2026, 2, 1)
        assert (t_item.status, t_item.progress) == ("completed", 100)

    def test_new_items_get_increasing_sort_order_after_existing_max(self):
        db.session.add(PlanItem(project_id=1, item_type="component", name="Group", sort_order=10))
        db.session.commit()
        _make_milestone(name="A")
        _make_milestone(name="B")

        sync_svc.sync_from_authority(1)

        orders = sorted(i.sort_order for i in _items() if i.item_type == "milestone")
        assert orders == [11, 12]

    def test_other_projects_are_untouched(self):
        _make_milestone(project_id=2)
        result = sync_svc.sync_from_authority(1)
        assert result["imported"] == 0
        assert _items(project_id=2) == []


class TestIdempotence:

    def test_second_run_reports_nothing_and_changes_nothing(self):
        m = _make_milestone(status="InProgress", progress=40, billable=True)
        d = _make_deliverable(m, status="Delivered")
        _make_task(d, name="a", sort_order=1)
        _make_task(d, name="b", sort_order=2, is_complete=True)

        sync_svc.sync_from_authority(1)
        before = _snapshot_rows()
        second = sync_svc.sync_from_authority(1)

        assert (second["imported"], second["updated"], second["deleted"]) == (0, 0, 0)
        assert _snapshot_rows() == before

    def test_second_run_after_deletion_does_not_count_again(self):
        m = _make_milestone()
        sync_svc.sync_from_authority(1)
        m.soft_delete()
        db.session.commit()

        assert sync_svc.sync_from_authority(1)["deleted"] == 1
        assert sync_svc.sync_from_authority(1)["deleted"] == 0


class TestAuthorityWins:

    def test_governance_edit_overwrites_sandbox_edit(self):
        m = _make_milestone(name="Original")
        sync_svc.sync_from_authority(1)
        item = _linked(m.id)
        item.name = "Local rename"
        db.session.commit()

        m.name = "Renamed in governance"
        m.status = "Completed"
        db.session.commit()
        result = sync_svc.sync_from_authority(1)

        assert result["updated"] == 1
        item = _linked(m.id)
        assert item.name == "Renamed in governance"
        assert item.status == "completed"

    def test_update_keeps_place_in_tree(self):
        m = _make_milestone()
        sync_svc.sync_from_authority(1)
        item = _linked(m.id)
        item.sort_order = 99
        db.session.commit()

        m.progress = 50
        db.session.commit()
        sync_svc.sync_from_authority(1)

        assert _linked(m.id).sort_order == 99


class TestDeletionPropagation:

    def test_deleted_milestone_removes_linked_subtree_per_level(self):
        m = _make_milestone()
        d = _make_deliverable(m)
        _make_task(d, name="a")
        _make_task(d, name="b", sort_order=2)
        sync_svc.sync_from_authority(1)

        m.soft_delete()
        db.session.commit()
        result = sync_svc.sync_from_authority(1)

        assert result["deleted"] == 4
        assert result["by_level"]["milestones"]["deleted"] == 1
        assert result["by_level"]["deliverables"]["deleted"] == 1
        assert result["by_level"]["tasks"]["deleted"] == 2
        assert _items() == []

    def test_uncommitted_local_items_are_not_deleted(self):
        m = _make_milestone()
        sync_svc.sync_from_authority(1)
        parent = _linked(m.id)
        db.session.add(PlanItem(
            project_id=1, parent_id=parent.id, item_type="deliverable", name="draft",
        ))
        db.session.commit()

        m.soft_delete()
        db.session.commit()
        sync_svc.sync_from_authority(1)

        assert [i.name for i in _items()] == ["draft"]

    def test_revived_record_reuses_old_item(self):
        m = _make_milestone()
        sync_svc.sync_from_authority(1)
        first_id = _linked(m.id).id
        m.soft_delete()
        db.session.commit()
        sync_svc.sync_from_authority(1)

        m.restore()
        db.session.commit()
        result = sync_svc.sync_from_authority(1)

        assert result["imported"] == 0
        assert result["updated"] == 1
        assert [i.id for i in _items()] == [first_id]


class TestAbortedRun:

    def test_failure_at_task_level_keeps_earlier_levels_and_rerun_completes(self):
        m = _make_milestone()
        d = _make_deliverable(m)
        _make_task(d)

        outage = StoreUnavailableError("governance", "list_active_tasks", "timeout")
        with patch.object(governance_store, "list_active_tasks", side_effect=outage):
            with pytest.raises(StoreUnavailableError):
                sync_svc.sync_from_authority(1)

        assert {i.item_type for i in _items()} == {"milestone", "deliverable"}

        result = sync_svc.sync_from_authority(1)
        assert result["imported"] == 1
        assert result["by_level"]["milestones"] == {
            "imported": 0, "updated": 0, "deleted": 0, "skipped": 0,
        }
        assert len(_items()) == 3

    def test_failed_run_writes_error_log(self):
        _make_milestone()
        outage = StoreUnavailableError("governance", "list_active_milestones", "refused")
        with patch.object(governance_store, "list_active_milestones", side_effect=outage):
            with pytest.raises(StoreUnavailableError):
                sync_svc.sync_from_authority(1, actor_id=5)

        log = db.session.execute(select(PlanSyncLog)).scalar_one()
        assert log.status == "error"
        assert log.sync_direction == "inbound"
        assert "refused" in log.error_message
        assert log.actor_id == "5"


class TestSyncLog:

    def test_success_log_carries_counts(self):
        _make_milestone()
        sync_svc.sync_from_authority(1, triggered_by="auto")

        rows = sync_svc.get_sync_log(1)
        assert len(rows) == 1
        assert rows[0]["status"] == "success"
        assert rows[0]["imported_count"] == 1
        assert rows[0]["triggered_by"] == "auto"

    def test_limit_is_capped_by_config(self, app):
        for _ in range(3):
            sync_svc.sync_from_authority(1)
        app.config["PLAN_SYNC_LOG_LIMIT"] = 2
        try:
            assert len(sync_svc.get_sync_log(1, limit=50)) == 2
        finally:
            app.config["PLAN_SYNC_LOG_LIMIT"] = 200
