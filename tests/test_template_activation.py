"""
Tests for template activation / deactivation.

Covers:
  - DRAFT → ACTIVE with effective_from defaulting to now
  - deactivate_others: lineage parent → SUPERSEDED, unrelated sibling → INACTIVE
  - never two ACTIVE templates for one product
  - invalid source states raise ConflictError and change nothing
  - deactivate / re-activate round trip
  - race detection: rollback, retry, ConflictError after the retry budget
"""

import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from process_routing.core.exceptions import ConflictError, NotFoundError, ValidationError
from process_routing.middleware.logging_config import JSONFormatter
from process_routing.models import db
from process_routing.models.process_template import ProcessTemplate, as_utc
from process_routing.services import process_template_service as pts
from process_routing.services import template_activation_service as activation
from process_routing.services.template_activation_service import (
    activate_template,
    deactivate_template,
)
from process_routing.services.template_version_service import create_new_version


def _status(template_id):
    db.session.expire_all()
    return db.session.get(ProcessTemplate, template_id).status


def _active_ids(product_sku):
    db.session.expire_all()
    return [
        t.id for t in ProcessTemplate.query.filter_by(product_sku=product_sku, status="ACTIVE")
    ]


class TestActivate:
    def test_first_activation_sets_effective_now(self, make_template):
        v1 = make_template()
        before = datetime.now(timezone.utc)
        result = activate_template(v1["id"], deactivate_others=True, activated_by="planner")
        after = datetime.now(timezone.utc)

        assert result["status"] == "ACTIVE"
        assert result["is_effective"] is True
        assert result["updated_by"] == "planner"
        started = datetime.fromisoformat(result["effective_from"])
        assert before - timedelta(seconds=1) <= started <= after + timedelta(seconds=1)
        assert pts.get_effective_template("HR-COIL-2MM")["id"] == v1["id"]

    def test_explicit_effective_from(self, make_template):
        v1 = make_template()
        result = activate_template(v1["id"], effective_from="2026-01-15T06:00:00Z")
        assert result["effective_from"].startswith("2026-01-15T06:00:00")

    def test_keeps_stored_effective_from(self, make_template):
        v1 = make_template(effective_from="2026-03-01")
        result = activate_template(v1["id"])
        assert result["effective_from"].startswith("2026-03-01T00:00:00")

    def test_activation_log_carries_context(self, make_template, caplog):
        v1 = make_template()
        with caplog.at_level(logging.INFO, logger=activation.__name__):
            activate_template(v1["id"], activated_by="planner")

        record = next(r for r in caplog.records if r.getMessage().startswith("ProcessTemplate activated"))
        assert (record.template_id, record.product_sku, record.actor) == (v1["id"], "HR-COIL-2MM", "planner")
        line = json.loads(JSONFormatter().format(record))
        assert line["product_sku"] == "HR-COIL-2MM"
        assert line["template_id"] == v1["id"]

    def test_invalid_effective_from(self, make_template):
        v1 = make_template()
        with pytest.raises(ValidationError):
            activate_template(v1["id"], effective_from="not a date")
        assert _status(v1["id"]) == "DRAFT"

    def test_new_version_supersedes_parent(self, make_template):
        v1 = make_template(name="Melt-Cast v1")
        activate_template(v1["id"], deactivate_others=True)
        v2 = create_new_version(v1["id"])
        assert [s["operation_name"] for s in v2["steps"]] == ["Melt", "Cast"]

        result = activate_template(v2["id"], deactivate_others=True)

        assert result["status"] == "ACTIVE"
        assert _status(v1["id"]) == "SUPERSEDED"
        assert _active_ids("HR-COIL-2MM") == [v2["id"]]
        old = db.session.get(ProcessTemplate, v1["id"])
        assert old.effective_to is not None
        assert not old.is_effective

    def test_unrelated_sibling_becomes_inactive(self, make_template):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        activate_template(a["id"])
        activate_template(b["id"], deactivate_others=True)
        assert _status(a["id"]) == "INACTIVE"
        assert _active_ids("HR-COIL-2MM") == [b["id"]]

    def test_only_same_product_is_touched(self, make_template):
        a = make_template(product_sku="SKU-A")
        b = make_template(product_sku="SKU-B")
        activate_template(a["id"])
        activate_template(b["id"], deactivate_others=True)
        assert _status(a["id"]) == "ACTIVE"

    def test_second_active_without_flag_rejected(self, make_template):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        activate_template(a["id"])
        with pytest.raises(ConflictError) as exc:
            activate_template(b["id"])
        assert exc.value.is_state_conflict
        assert _status(b["id"]) == "DRAFT"
        assert _active_ids("HR-COIL-2MM") == [a["id"]]

    def test_without_product_sku(self, make_template):
        a = make_template(product_sku=None)
        b = make_template(product_sku=None)
        activate_template(a["id"], deactivate_others=True)
        activate_template(b["id"], deactivate_others=True)
        assert _status(a["id"]) == "ACTIVE"
        assert _status(b["id"]) == "ACTIVE"

    @pytest.mark.parametrize("status", ["ACTIVE", "SUPERSEDED"])
    def test_invalid_source_status(self, make_template, status):
        t = make_template()
        db.session.get(ProcessTemplate, t["id"]).status = status
        db.session.commit()
        with pytest.raises(ConflictError):
            activate_template(t["id"])
        assert _status(t["id"]) == status

    def test_missing(self):
        with pytest.raises(NotFoundError):
            activate_template(404)


class TestDeactivate:
    def test_deactivate_closes_window(self, make_template):
        t = make_template()
        activate_template(t["id"])
        result = deactivate_template(t["id"], deactivated_by="planner")
        assert result["status"] == "INACTIVE"
        assert result["effective_to"] is not None
        assert result["is_effective"] is False
        with pytest.raises(NotFoundError):
            pts.get_effective_template("HR-COIL-2MM")

    def test_reactivate_reopens_window(self, make_template):
        t = make_template()
        activate_template(t["id"])
        deactivate_template(t["id"])
        result = activate_template(t["id"])
        assert result["status"] == "ACTIVE"
        assert result["effective_to"] is None
        assert result["is_effective"] is True

    def test_no_cascade(self, make_template):
        a = make_template(product_sku="SKU-A")
        b = make_template(product_sku="SKU-B")
        activate_template(a["id"])
        activate_template(b["id"])
        deactivate_template(a["id"])
        assert _status(b["id"]) == "ACTIVE"

    @pytest.mark.parametrize("status", ["DRAFT", "INACTIVE", "SUPERSEDED"])
    def test_only_active_can_be_deactivated(self, make_template, status):
        t = make_template()
        db.session.get(ProcessTemplate, t["id"]).status = status
        db.session.commit()
        with pytest.raises(ConflictError):
            deactivate_template(t["id"])
        assert _status(t["id"]) == status

    def test_missing(self):
        with pytest.raises(NotFoundError):
            deactivate_template(404)


class TestExclusivityRace:
    def test_race_is_retried(self, make_template, monkeypatch):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        activate_template(a["id"])

        real_retire = activation._retire_siblings
        calls = []

        def _lose_first_attempt(target, siblings, now):
            calls.append(target.id)
            if len(calls) == 1:
                return []  # another writer re-activated a sibling in between
            return real_retire(target, siblings, now)

        monkeypatch.setattr(activation, "_retire_siblings", _lose_first_attempt)
        result = activate_template(b["id"], deactivate_others=True)

        assert len(calls) == 2
        assert result["status"] == "ACTIVE"
        assert _status(a["id"]) == "INACTIVE"
        assert _active_ids("HR-COIL-2MM") == [b["id"]]

    def test_persistent_race_surfaces_conflict(self, app, make_template, monkeypatch):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        activate_template(a["id"])

        calls = []
        monkeypatch.setattr(
            activation, "_retire_siblings", lambda target, siblings, now: calls.append(1) or [],
        )
        with pytest.raises(ConflictError):
            activate_template(b["id"], deactivate_others=True)

        assert len(calls) == app.config["ACTIVATION_MAX_RETRIES"]
        assert _status(b["id"]) == "DRAFT"
        assert _active_ids("HR-COIL-2MM") == [a["id"]]

    @staticmethod
    def _competitor_activates(template_id, monkeypatch, times=None):
        """Flip ``template_id`` to ACTIVE behind the ORM right after the SKU rows are read."""
        real_lock = activation._lock_product_rows
        calls = []

        def _lock_then_compete(product_sku):
            rows = real_lock(product_sku)
            calls.append(product_sku)
            if times is None or len(calls) <= times:
                table = ProcessTemplate.__table__
                db.session.connection().execute(
                    table.update()
                    .where(table.c.id == template_id)
                    .values(status="ACTIVE", effective_from=datetime(2000, 1, 1, tzinfo=timezone.utc))
                )
            return rows

        monkeypatch.setattr(activation, "_lock_product_rows", _lock_then_compete)
        return calls

    def test_plain_activation_rechecks_before_commit(self, make_template, monkeypatch):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        calls = self._competitor_activates(a["id"], monkeypatch, times=1)

        result = activate_template(b["id"])

        assert len(calls) == 2
        assert result["status"] == "ACTIVE"
        assert _active_ids("HR-COIL-2MM") == [b["id"]]

    def test_plain_activation_never_commits_two_active(self, app, make_template, monkeypatch):
        a = make_template(name="Route A")
        b = make_template(name="Route B")
        calls = self._competitor_activates(a["id"], monkeypatch)

        with pytest.raises(ConflictError) as exc:
            activate_template(b["id"])

        assert exc.value.field == "product_sku"
        assert len(calls) == app.config["ACTIVATION_MAX_RETRIES"]
        assert _status(b["id"]) == "DRAFT"
        assert len(_active_ids("HR-COIL-2MM")) <= 1

    def test_product_lock_serializes_same_sku(self):
        inside = []
        overlaps = []

        def _worker():
            with activation.product_lock("SKU-LOCK"):
                if inside:
                    overlaps.append(True)
                inside.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=_worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlaps == []


class TestWindowHelpers:
    def test_windows_overlap(self):
        now = datetime.now(timezone.utc)
        a = ProcessTemplate(effective_from=now - timedelta(days=10), effective_to=now)
        b = ProcessTemplate(effective_from=now, effective_to=None)
        c = ProcessTemplate(effective_from=now - timedelta(days=1), effective_to=None)
        assert not activation._windows_overlap(a, b)
        assert activation._windows_overlap(a, c)
        assert activation._windows_overlap(b, c)

    def test_as_utc_naive(self):
        naive = datetime(2026, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo is timezone.utc
