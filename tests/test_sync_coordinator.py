"""Tests for the sync coordinator and PlanSnapshotService (undo points)."""

from datetime import date
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from planbridge.core.exceptions import NotFoundError
from planbridge.models import db
from planbridge.models.governance import Deliverable, Milestone
from planbridge.models.planning import PlanItem, PlanSnapshot, PlanSyncLog
from planbridge.services import plan_item_service, sync_coordinator
from planbridge.services.plan_snapshot_service import PlanSnapshotService


def _make_milestone(name="M1", **kw) -> Milestone:
    m = Milestone(project_id=1, name=name, **kw)
    db.session.add(m)
    db.session.commit()
    return m


def _item(name) -> PlanItem:
    return db.session.execute(select(PlanItem).where(PlanItem.name == name)).scalar_one()


class TestRunSync:

    def test_silent_first_load_has_no_snapshot_or_notice(self):
        _make_milestone()
        snap = MagicMock()

        out = sync_coordinator.run_sync(1, silent=True, snapshot_fn=snap)

        snap.assert_not_called()
        assert out["snapshot"] is None
        assert out["show_notice"] is False
        assert out["notice"] is None
        assert out["result"]["imported"] == 1
        log = db.session.execute(select(PlanSyncLog)).scalar_one()
        assert log.triggered_by == "auto"

    def test_visible_sync_snapshots_before_import(self):
        _make_milestone()
        seen = []

        def snap(project_id, actor_id):
            seen.append(db.session.execute(select(PlanItem)).scalars().all())
            return {"id": "snap-1"}

        out = sync_coordinator.run_sync(1, snapshot_fn=snap, actor_id=9)

        assert seen == [[]]
        assert out["snapshot"] == {"id": "snap-1"}
        assert out["result"]["imported"] == 1

    def test_import_only_shows_no_notice(self):
        _make_milestone()
        out = sync_coordinator.run_sync(1, snapshot_fn=lambda p, a: {})
        assert out["show_notice"] is False

    def test_overwrite_shows_notice_with_count(self):
        m = _make_milestone()
        sync_coordinator.run_sync(1, silent=True)
        m.name = "changed"
        db.session.commit()

        out = sync_coordinator.run_sync(1, snapshot_fn=lambda p, a: {})

        assert out["show_notice"] is True
        assert out["notice"] == "1 item(s) updated from the source of truth; undo available"

    def test_snapshot_failure_aborts_before_import(self):
        _make_milestone()

        def broken(project_id, actor_id):
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            sync_coordinator.run_sync(1, snapshot_fn=broken)

        assert db.session.execute(select(PlanItem)).scalars().all() == []
        assert db.session.execute(select(PlanSyncLog)).scalars().all() == []

    def test_default_snapshot_is_persisted(self):
        _make_milestone()
        out = sync_coordinator.run_sync(1, actor_id=4)
        stored = db.session.get(PlanSnapshot, out["snapshot"]["id"])
        assert stored.reason == "pre_sync"
        assert stored.created_by == "4"
        assert stored.item_count == 0


class TestSnapshots:

    def test_capture_serialises_whole_tree(self):
        db.session.add_all([
            PlanItem(project_id=1, item_type="milestone", name="A"),
            PlanItem(project_id=1, item_type="milestone", name="B", is_deleted=True),
            PlanItem(project_id=2, item_type="milestone", name="other"),
        ])
        db.session.commit()

        snap = PlanSnapshotService.capture(1, reason="manual")

        stored = db.session.get(PlanSnapshot, snap["id"])
        assert snap["item_count"] == 2
        assert {row["name"] for row in stored.items()} == {"A", "B"}

    def test_retention_keeps_newest(self, app):
        for _ in range(5):
            PlanSnapshotService.capture(1)
        keep = app.config["PLAN_SNAPSHOT_RETENTION"]
        assert len(PlanSnapshotService.list_snapshots(1)) == keep

    def test_restore_undoes_sync_overwrite(self):
        m = _make_milestone(name="Governance name")
        sync_coordinator.run_sync(1, silent=True)
        item = _item("Governance name")
        item.name = "My local name"
        item.progress = 70
        db.session.commit()

        m.name = "Governance rename"
        db.session.commit()
        out = sync_coordinator.run_sync(1)
        assert _item("Governance rename").id == item.id

        result = PlanSnapshotService.restore(out["snapshot"]["id"])
        db.session.commit()

        restored = db.session.get(PlanItem, item.id)
        assert result == {
            "snapshot_id": out["snapshot"]["id"], "restored": 1, "locked": 0, "missing": 0,
        }
        assert (restored.name, restored.progress) == ("My local name", 70)

    def test_restore_revives_items_removed_by_sync(self):
        m = _make_milestone()
        sync_coordinator.run_sync(1, silent=True)
        m.soft_delete()
        db.session.commit()
        out = sync_coordinator.run_sync(1)
        assert _item("M1").is_deleted is True

        PlanSnapshotService.restore(out["snapshot"]["id"])
        db.session.commit()

        assert _item("M1").is_deleted is False

    def test_restore_keeps_locked_scheduling_fields(self):
        m = _make_milestone(end_date=date(2026, 3, 31))
        sync_coordinator.run_sync(1, silent=True)
        item = _item("M1")
        item.end_date = date(2026, 2, 28)
        db.session.commit()
        snap = PlanSnapshotService.capture(1)

        m.baseline_locked = True
        db.session.commit()
        sync_coordinator.run_sync(1, silent=True)

        PlanSnapshotService.restore(snap["id"])
        db.session.commit()
        assert _item("M1").end_date == date(2026, 3, 31)

    def test_restore_does_not_move_locked_item(self):
        m1 = _make_milestone(name="M1", start_date=date(2026, 1, 1), end_date=date(2026, 3, 31))
        m2 = _make_milestone(name="M2", start_date=date(2026, 4, 1), end_date=date(2026, 6, 30))
        db.session.add(Deliverable(project_id=1, milestone_id=m2.id, name="D1"))
        db.session.commit()
        sync_coordinator.run_sync(1, silent=True)
        m1_item, m2_item = _item("M1"), _item("M2")

        plan_item_service.move_item(_item("D1").id, m1_item.id)
        db.session.commit()
        snap = PlanSnapshotService.capture(1)
        plan_item_service.move_item(_item("D1").id, m2_item.id)
        db.session.commit()
        m2.baseline_locked = True
        db.session.commit()

        result = PlanSnapshotService.restore(snap["id"])
        db.session.commit()

        assert _item("D1").parent_id == m2_item.id
        assert result["locked"] == 2
        assert result["restored"] == 1

    def test_restore_does_not_delete_locked_item(self):
        m = _make_milestone(start_date=date(2026, 1, 1), end_date=date(2026, 3, 31))
        d = Deliverable(project_id=1, milestone_id=m.id, name="D1")
        db.session.add(d)
        db.session.commit()
        sync_coordinator.run_sync(1, silent=True)
        d.soft_delete()
        db.session.commit()
        sync_coordinator.run_sync(1, silent=True)
        snap = PlanSnapshotService.capture(1)

        d.restore()
        m.baseline_locked = True
        db.session.commit()
        sync_coordinator.run_sync(1, silent=True)
        assert _item("D1").is_deleted is False

        PlanSnapshotService.restore(snap["id"])
        db.session.commit()

        assert _item("D1").is_deleted is False

    def test_items_created_after_snapshot_are_left_alone(self):
        snap = PlanSnapshotService.capture(1)
        db.session.add(PlanItem(project_id=1, item_type="milestone", name="later"))
        db.session.commit()

        result = PlanSnapshotService.restore(snap["id"])

        assert result["restored"] == 0
        assert _item("later").is_deleted is False

    def test_unknown_snapshot_is_not_found(self):
        with pytest.raises(NotFoundError):
            PlanSnapshotService.restore("nope")
