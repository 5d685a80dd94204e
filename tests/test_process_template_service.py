"""
Tests for process template store and query functions.

Covers:
  - create_template: DRAFT status, default version, dense renumbering, validation
  - update_template: full step replace, partial fields, DRAFT-only gate
  - delete_template: DRAFT-only gate
  - single-step add / update / remove keep numbering dense
  - list_templates: paging, filters, sorting, page vs. global summary
  - get_status_summary / list_templates_for_product / get_effective_template
"""

from datetime import datetime, timedelta, timezone

import pytest

from process_routing.core.exceptions import ConflictError, NotFoundError, ValidationError
from process_routing.models import db
from process_routing.models.process_template import ProcessTemplate, RoutingStep
from process_routing.services import process_template_service as pts


def _force_status(template_id, status, **fields):
    """Put a template into a lifecycle state directly (bypasses the controller)."""
    t = db.session.get(ProcessTemplate, template_id)
    t.status = status
    for k, v in fields.items():
        setattr(t, k, v)
    db.session.commit()


def _names(template):
    return [s["operation_name"] for s in template["steps"]]


def _seqs(template):
    return [s["sequence_number"] for s in template["steps"]]


# ═════════════════════════════════════════════════════════════════════════
# Create / get
# ═════════════════════════════════════════════════════════════════════════


class TestCreateTemplate:
    def test_create_defaults(self, make_template):
        t = make_template()
        assert t["id"] is not None
        assert t["status"] == "DRAFT"
        assert t["version"] == "1.0"
        assert t["created_by"] == "tester"
        assert t["step_count"] == 2
        assert _names(t) == ["Melt", "Cast"]
        assert t["steps"][0]["target_qty"] == 1500.0
        assert t["steps"][1]["allows_split"] is True
        assert t["steps"][0]["mandatory_flag"] is True
        assert t["steps"][0]["produces_output_batch"] is True

    def test_status_in_payload_ignored(self, make_template):
        assert make_template(status="ACTIVE")["status"] == "DRAFT"

    def test_steps_renumbered_by_incoming_order(self, make_template):
        t = make_template(steps=[
            {"operation_name": "Cast", "sequence_number": 20},
            {"operation_name": "Melt", "sequence_number": 5},
            {"operation_name": "Pack"},
        ])
        assert _names(t) == ["Melt", "Cast", "Pack"]
        assert _seqs(t) == [1, 2, 3]

    def test_without_steps(self, make_template):
        t = make_template(steps=None)
        assert t["steps"] == []

    @pytest.mark.parametrize("name", [None, "", "   ", "x" * 101])
    def test_invalid_name(self, make_template, name):
        with pytest.raises(ValidationError) as exc:
            make_template(name=name)
        assert "name" in exc.value.details
        assert ProcessTemplate.query.count() == 0

    def test_invalid_steps_reported_per_field(self, make_template):
        with pytest.raises(ValidationError) as exc:
            make_template(steps=[
                {"operation_name": "Melt"},
                {"operation_name": "", "operation_type": "WELDING", "target_qty": -1},
            ])
        details = exc.value.details
        assert "steps[1].operation_name" in details
        assert "steps[1].operation_type" in details
        assert "steps[1].target_qty" in details
        assert ProcessTemplate.query.count() == 0

    @pytest.mark.parametrize("minutes", [
        "inf", float("inf"), float("-inf"), "nan", 1e400, 2**31, "12.5", -3,
    ])
    def test_unusable_duration_rejected(self, make_template, minutes):
        with pytest.raises(ValidationError) as exc:
            make_template(steps=[{"operation_name": "Melt", "estimated_duration_minutes": minutes}])
        assert "steps[0].estimated_duration_minutes" in exc.value.details
        assert ProcessTemplate.query.count() == 0

    def test_duration_at_column_limit_accepted(self, make_template):
        t = make_template(steps=[{"operation_name": "Melt", "estimated_duration_minutes": 2**31 - 1}])
        assert t["steps"][0]["estimated_duration_minutes"] == 2**31 - 1

    def test_effective_window_must_be_ordered(self, make_template):
        with pytest.raises(ValidationError) as exc:
            make_template(effective_from="2026-05-01", effective_to="2026-04-01")
        assert "effective_to" in exc.value.details

    def test_duplicate_code(self, make_template):
        make_template(code="MC-1")
        with pytest.raises(ConflictError) as exc:
            make_template(code="MC-1")
        assert not exc.value.is_state_conflict

    def test_get_and_get_by_code(self, make_template):
        t = make_template(code="MC-1")
        assert pts.get_template(t["id"])["name"] == "Melt-Cast v1"
        assert pts.get_template_by_code("MC-1")["id"] == t["id"]

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            pts.get_template(9999)
        with pytest.raises(NotFoundError):
            pts.get_template_by_code("nope")


# ═════════════════════════════════════════════════════════════════════════
# Update / delete gates
# ═════════════════════════════════════════════════════════════════════════


class TestUpdateTemplate:
    def test_full_step_replace(self, make_template):
        t = make_template()
        updated = pts.update_template(t["id"], {
            "name": "Melt-Cast v1b",
            "steps": [
                {"operation_name": "Melt"},
                {"operation_name": "Degas", "operation_type": "QUALITY_CHECK"},
                {"operation_name": "Cast"},
            ],
        }, updated_by="editor")
        assert updated["name"] == "Melt-Cast v1b"
        assert updated["updated_by"] == "editor"
        assert _names(updated) == ["Melt", "Degas", "Cast"]
        assert _seqs(updated) == [1, 2, 3]
        assert RoutingStep.query.filter_by(template_id=t["id"]).count() == 3

    def test_fields_only_keeps_steps(self, make_template):
        t = make_template()
        updated = pts.update_template(t["id"], {"description": "billet line"})
        assert updated["description"] == "billet line"
        assert updated["name"] == "Melt-Cast v1"
        assert _names(updated) == ["Melt", "Cast"]

    def test_empty_step_list_clears(self, make_template):
        t = make_template()
        assert pts.update_template(t["id"], {"steps": []})["steps"] == []

    def test_invalid_update_changes_nothing(self, make_template):
        t = make_template()
        with pytest.raises(ValidationError):
            pts.update_template(t["id"], {"name": "ok", "steps": [{"operation_name": ""}]})
        db.session.expire_all()
        again = pts.get_template(t["id"])
        assert again["name"] == "Melt-Cast v1"
        assert _names(again) == ["Melt", "Cast"]

    @pytest.mark.parametrize("status", ["ACTIVE", "INACTIVE", "SUPERSEDED"])
    def test_non_draft_rejected_and_unchanged(self, make_template, status):
        t = make_template()
        _force_status(t["id"], status)
        with pytest.raises(ConflictError) as exc:
            pts.update_template(t["id"], {"name": "x", "steps": []})
        assert exc.value.is_state_conflict
        db.session.expire_all()
        again = pts.get_template(t["id"])
        assert again["name"] == "Melt-Cast v1"
        assert again["status"] == status
        assert _names(again) == ["Melt", "Cast"]

    def test_missing(self):
        with pytest.raises(NotFoundError):
            pts.update_template(404, {"name": "x"})


class TestDeleteTemplate:
    def test_delete_draft_removes_steps(self, make_template):
        t = make_template()
        pts.delete_template(t["id"])
        assert db.session.get(ProcessTemplate, t["id"]) is None
        assert RoutingStep.query.count() == 0

    @pytest.mark.parametrize("status", ["ACTIVE", "INACTIVE", "SUPERSEDED"])
    def test_non_draft_rejected(self, make_template, status):
        t = make_template()
        _force_status(t["id"], status)
        with pytest.raises(ConflictError):
            pts.delete_template(t["id"])
        assert db.session.get(ProcessTemplate, t["id"]).status == status

    def test_missing(self):
        with pytest.raises(NotFoundError):
            pts.delete_template(404)


# ═════════════════════════════════════════════════════════════════════════
# Single-step operations
# ═════════════════════════════════════════════════════════════════════════


class TestStepOperations:
    def test_add_step_appends(self, make_template):
        t = make_template()
        step = pts.add_step(t["id"], {"operation_name": "Pack", "operation_type": "PACKAGING"})
        assert step["sequence_number"] == 3
        assert step["template_id"] == t["id"]
        assert _names(pts.get_template(t["id"])) == ["Melt", "Cast", "Pack"]

    def test_add_step_at_position(self, make_template):
        t = make_template()
        step = pts.add_step(t["id"], {"operation_name": "Degas", "sequence_number": 2})
        assert step["sequence_number"] == 2
        again = pts.get_template(t["id"])
        assert _names(again) == ["Melt", "Degas", "Cast"]
        assert _seqs(again) == [1, 2, 3]

    def test_update_step_fields_and_move(self, make_template):
        t = make_template()
        cast_id = t["steps"][1]["id"]
        step = pts.update_step(cast_id, {"description": "DC casting", "sequence_number": 1})
        assert step["description"] == "DC casting"
        assert step["sequence_number"] == 1
        again = pts.get_template(t["id"])
        assert _names(again) == ["Cast", "Melt"]
        assert _seqs(again) == [1, 2]

    def test_remove_step_closes_gap(self, make_template):
        t = make_template()
        pts.add_step(t["id"], {"operation_name": "Pack"})
        pts.remove_step(t["steps"][0]["id"])
        again = pts.get_template(t["id"])
        assert _names(again) == ["Cast", "Pack"]
        assert _seqs(again) == [1, 2]

    def test_step_edits_need_draft(self, make_template):
        t = make_template()
        _force_status(t["id"], "ACTIVE")
        with pytest.raises(ConflictError):
            pts.add_step(t["id"], {"operation_name": "Pack"})
        with pytest.raises(ConflictError):
            pts.update_step(t["steps"][0]["id"], {"description": "x"})
        with pytest.raises(ConflictError):
            pts.remove_step(t["steps"][0]["id"])
        assert RoutingStep.query.filter_by(template_id=t["id"]).count() == 2

    def test_unknown_step(self):
        with pytest.raises(NotFoundError):
            pts.update_step(404, {"description": "x"})
        with pytest.raises(NotFoundError):
            pts.remove_step(404)

    def test_invalid_step(self, make_template):
        t = make_template()
        with pytest.raises(ValidationError):
            pts.add_step(t["id"], {"operation_name": "Pack", "estimated_duration_minutes": -5})


# ═════════════════════════════════════════════════════════════════════════
# Listing & aggregates
# ═════════════════════════════════════════════════════════════════════════


class TestListTemplates:
    def _catalog(self, make_template):
        a = make_template(name="Alpha", code="A-1", product_sku="SKU-A")
        b = make_template(name="Beta", code="B-1", product_sku="SKU-B")
        c = make_template(name="Gamma", code="G-1", product_sku="SKU-A")
        _force_status(b["id"], "ACTIVE")
        _force_status(c["id"], "INACTIVE")
        return a, b, c

    def test_summary_items_have_step_count_only(self, make_template):
        self._catalog(make_template)
        page = pts.list_templates()
        assert page["total_elements"] == 3
        assert page["total_pages"] == 1
        assert page["first"] is True and page["last"] is True
        item = page["content"][0]
        assert "steps" not in item
        assert item["step_count"] == 2

    def test_default_sort_newest_first(self, make_template):
        a, b, c = self._catalog(make_template)
        ids = [t["id"] for t in pts.list_templates()["content"]]
        assert ids == [c["id"], b["id"], a["id"]]

    def test_sort_by_name_asc(self, make_template):
        self._catalog(make_template)
        names = [t["name"] for t in pts.list_templates(sort_by="name", sort_dir="asc")["content"]]
        assert names == ["Alpha", "Beta", "Gamma"]

    def test_filters(self, make_template):
        self._catalog(make_template)
        assert pts.list_templates(status="active")["total_elements"] == 1
        assert pts.list_templates(product_sku="SKU-A")["total_elements"] == 2
        assert pts.list_templates(search="gam")["content"][0]["name"] == "Gamma"
        assert pts.list_templates(search="b-1")["content"][0]["name"] == "Beta"

    def test_search_wildcards_match_literally(self, make_template):
        make_template(name="Cast 100% scrap", code="PCT-1")
        make_template(name="Cast line", code="LINE_2")
        make_template(name="Cast lineX", code="LINEX2")
        assert [t["code"] for t in pts.list_templates(search="100%")["content"]] == ["PCT-1"]
        assert pts.list_templates(search="%")["total_elements"] == 1
        assert [t["code"] for t in pts.list_templates(search="line_")["content"]] == ["LINE_2"]

    def test_paging_and_page_summary(self, make_template):
        self._catalog(make_template)
        page = pts.list_templates(page=0, size=2)
        assert len(page["content"]) == 2
        assert page["total_pages"] == 2
        assert page["last"] is False
        assert page["summary"]["total"] == 2

        last = pts.list_templates(page=1, size=2)
        assert len(last["content"]) == 1
        assert last["last"] is True
        assert last["summary"] == {"draft": 1, "active": 0, "inactive": 0, "superseded": 0, "total": 1}

    def test_global_summary(self, make_template):
        self._catalog(make_template)
        page = pts.list_templates(page=0, size=1, summary_scope="all")
        assert page["summary"] == {"draft": 1, "active": 1, "inactive": 1, "superseded": 0, "total": 3}

    def test_page_size_clamped(self, make_template):
        self._catalog(make_template)
        assert pts.list_templates(size=10_000)["size"] == pts.MAX_PAGE_SIZE

    @pytest.mark.parametrize("kwargs", [
        {"sort_by": "nope"}, {"sort_dir": "sideways"}, {"status": "RETIRED"}, {"summary_scope": "some"},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValidationError):
            pts.list_templates(**kwargs)

    def test_status_summary(self, make_template):
        self._catalog(make_template)
        assert pts.get_status_summary() == {
            "draft": 1, "active": 1, "inactive": 1, "superseded": 0, "total": 3,
        }
        assert pts.get_status_summary(product_sku="SKU-A")["total"] == 2


class TestProductLookups:
    def test_templates_for_product(self, make_template):
        make_template(product_sku="SKU-A")
        make_template(product_sku="SKU-A", name="second")
        make_template(product_sku="SKU-B")
        items = pts.list_templates_for_product("SKU-A")
        assert [t["name"] for t in items] == ["second", "Melt-Cast v1"]

    def test_effective_template(self, make_template):
        now = datetime.now(timezone.utc)
        old = make_template(name="old")
        cur = make_template(name="current")
        _force_status(old["id"], "INACTIVE", effective_from=now - timedelta(days=30),
                      effective_to=now - timedelta(days=1))
        _force_status(cur["id"], "ACTIVE", effective_from=now - timedelta(days=1))
        assert pts.get_effective_template("HR-COIL-2MM")["id"] == cur["id"]

    def test_effective_template_respects_window(self, make_template):
        now = datetime.now(timezone.utc)
        t = make_template()
        _force_status(t["id"], "ACTIVE", effective_from=now + timedelta(days=3))
        with pytest.raises(NotFoundError):
            pts.get_effective_template("HR-COIL-2MM")
        found = pts.get_effective_template("HR-COIL-2MM", at=now + timedelta(days=4))
        assert found["id"] == t["id"]

    def test_no_effective_template(self):
        with pytest.raises(NotFoundError):
            pts.get_effective_template("UNKNOWN")
