"""
Process Template: Service Layer.

Business logic for:
    - Field and step validation:   required/length/enum checks, collected per field
    - Template CRUD:               create, get, get-by-code, full-replace update, delete
    - Step convenience operations: add / update / remove a single step on a DRAFT template
    - Listing:                     paged, filtered, sorted summaries with status counts
    - Product lookups:             all templates for a SKU, the effective template for a SKU

Rules:
  - Only DRAFT templates accept field, step or delete mutations (ConflictError otherwise).
  - A step list is always replaced as a whole inside one transaction.
  - Sequence numbers are dense and 1-based after every write.
  - db.session.commit() happens only in the service layer.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from process_routing.core.exceptions import ConflictError, NotFoundError, ValidationError
from process_routing.models import db
from process_routing.models.process_template import (
    CODE_MAX,
    DEFAULT_OPERATION_TYPE,
    DEFAULT_VERSION,
    DELETABLE_STATUSES,
    DESCRIPTION_MAX,
    DURATION_MINUTES_MAX,
    NAME_MAX,
    OPERATION_TYPES,
    SKU_MAX,
    STATUS_ACTIVE,
    STATUS_DRAFT,
    STATUS_INACTIVE,
    STATUS_SUPERSEDED,
    STEP_STATUSES,
    TEMPLATE_STATUSES,
    VERSION_MAX,
    ProcessTemplate,
    RoutingStep,
    as_utc,
)
from process_routing.services.routing_sequence import (
    append_step,
    move_step_to,
    remove_step_at,
    resequence,
    sort_by_sequence,
)

logger = logging.getLogger(__name__)

# Scalar fields a DRAFT update may replace
_UPDATABLE_FIELDS = (
    "name", "description", "product_sku", "version", "effective_from", "effective_to",
)

_STEP_FLAGS = {
    "is_parallel": False,
    "mandatory_flag": True,
    "produces_output_batch": True,
    "allows_split": False,
    "allows_merge": False,
}

SORTABLE_FIELDS = {
    "created_on": ProcessTemplate.created_on,
    "updated_on": ProcessTemplate.updated_on,
    "name": ProcessTemplate.name,
    "code": ProcessTemplate.code,
    "version": ProcessTemplate.version,
    "status": ProcessTemplate.status,
    "product_sku": ProcessTemplate.product_sku,
    "id": ProcessTemplate.id,
}

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


# ── Parsing helpers ──────────────────────────────────────────────────────────


def parse_dt(val: str | date | datetime | None) -> datetime | None:
    """Convert an ISO-format string (or date) to a UTC-aware datetime.

    Supports the common ISO variants sent by the editor and falls back to
    ``fromisoformat`` for anything else. Raises ValueError when unparseable.
    """
    if val is None:
        return None
    if isinstance(val, datetime):
        return as_utc(val)
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day, tzinfo=timezone.utc)
    if isinstance(val, str):
        val = val.strip()
        if not val:
            return None
        for fmt in ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
            try:
                return as_utc(datetime.strptime(val, fmt))
            except ValueError:
                continue
        return as_utc(datetime.fromisoformat(val.replace("Z", "+00:00")))
    raise ValueError(f"unsupported datetime value {val!r}")


def _clean_str(value) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _check_len(errors: dict, field: str, value: str | None, limit: int) -> None:
    if value is not None and len(value) > limit:
        errors[field] = f"must be ≤ {limit} characters"


# ── Validation ───────────────────────────────────────────────────────────────


def _clean_template_fields(data: dict, *, partial: bool, errors: dict) -> dict:
    """Validate template scalar fields; only keys present in ``data`` are returned
    when ``partial`` is set."""
    cleaned: dict = {}

    if not partial or "name" in data:
        name = _clean_str(data.get("name"))
        if not name:
            errors["name"] = "name is required"
        else:
            _check_len(errors, "name", name, NAME_MAX)
        cleaned["name"] = name

    if not partial or "description" in data:
        description = _clean_str(data.get("description"))
        _check_len(errors, "description", description, DESCRIPTION_MAX)
        cleaned["description"] = description

    if not partial or "product_sku" in data:
        sku = _clean_str(data.get("product_sku"))
        _check_len(errors, "product_sku", sku, SKU_MAX)
        cleaned["product_sku"] = sku

    if not partial or "version" in data:
        version = _clean_str(data.get("version"))
        if version is None:
            if partial:
                errors["version"] = "version cannot be empty"
            version = DEFAULT_VERSION
        _check_len(errors, "version", version, VERSION_MAX)
        cleaned["version"] = version

    for field in ("effective_from", "effective_to"):
        if not partial or field in data:
            try:
                cleaned[field] = parse_dt(data.get(field))
            except ValueError:
                errors[field] = "must be an ISO-8601 date or datetime"

    return cleaned


def _clean_step(raw, index: int, errors: dict) -> dict:
    """Validate one step payload; errors are keyed ``steps[i].field``."""
    prefix = f"steps[{index}]"
    if not isinstance(raw, dict):
        errors[prefix] = "step must be an object"
        return {}

    step: dict = {}
    name = _clean_str(raw.get("operation_name"))
    if not name:
        errors[f"{prefix}.operation_name"] = "operation_name is required"
    else:
        _check_len(errors, f"{prefix}.operation_name", name, NAME_MAX)
    step["operation_name"] = name

    op_type = _clean_str(raw.get("operation_type")) or DEFAULT_OPERATION_TYPE
    op_type = op_type.upper()
    if op_type not in OPERATION_TYPES:
        errors[f"{prefix}.operation_type"] = (
            f"operation_type must be one of: {', '.join(sorted(OPERATION_TYPES))}"
        )
    step["operation_type"] = op_type

    code = _clean_str(raw.get("operation_code"))
    _check_len(errors, f"{prefix}.operation_code", code, CODE_MAX)
    step["operation_code"] = code

    description = _clean_str(raw.get("description"))
    _check_len(errors, f"{prefix}.description", description, DESCRIPTION_MAX)
    step["description"] = description

    qty = raw.get("target_qty")
    if qty is None or qty == "":
        step["target_qty"] = None
    else:
        try:
            if isinstance(qty, bool):
                raise InvalidOperation
            step["target_qty"] = Decimal(str(qty))
            if not step["target_qty"].is_finite() or step["target_qty"] < 0:
                raise InvalidOperation
        except (InvalidOperation, ValueError):
            errors[f"{prefix}.target_qty"] = "target_qty must be a non-negative number"
            step["target_qty"] = None

    duration = raw.get("estimated_duration_minutes")
    if duration is None or duration == "":
        step["estimated_duration_minutes"] = None
    elif isinstance(duration, bool) or not isinstance(duration, (int, float, str)):
        errors[f"{prefix}.estimated_duration_minutes"] = "must be a non-negative integer"
    else:
        try:
            minutes = float(duration)
            if not math.isfinite(minutes) or minutes < 0 or minutes != int(minutes):
                raise ValueError
            if minutes > DURATION_MINUTES_MAX:
                raise ValueError
            step["estimated_duration_minutes"] = int(minutes)
        except (ValueError, OverflowError):
            errors[f"{prefix}.estimated_duration_minutes"] = (
                f"must be a non-negative integer no greater than {DURATION_MINUTES_MAX}"
            )

    for flag, default in _STEP_FLAGS.items():
        value = raw.get(flag)
        step[flag] = default if value is None else bool(value)

    status = _clean_str(raw.get("status"))
    if status is not None:
        status = status.upper()
        if status not in STEP_STATUSES:
            errors[f"{prefix}.status"] = f"status must be one of: {', '.join(sorted(STEP_STATUSES))}"
    step["status"] = status or "ACTIVE"

    seq = raw.get("sequence_number")
    if seq is not None:
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 1:
            errors[f"{prefix}.sequence_number"] = "sequence_number must be a positive integer"
        else:
            step["sequence_number"] = seq

    return step


def _clean_steps(raw_steps, errors: dict) -> list[dict]:
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, (list, tuple)):
        errors["steps"] = "steps must be a list"
        return []
    cleaned = [_clean_step(raw, i, errors) for i, raw in enumerate(raw_steps)]
    # Store renumbers defensively: honour incoming order, then make dense
    return resequence(sort_by_sequence(cleaned))


def _check_window(errors: dict, start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and as_utc(start) >= as_utc(end):
        errors["effective_to"] = "effective_to must be after effective_from"


def _raise_if_errors(errors: dict, message: str) -> None:
    if errors:
        raise ValidationError(message, details=errors)


# ── Internal helpers ─────────────────────────────────────────────────────────


def _get_template(template_id: int, *, for_update: bool = False) -> ProcessTemplate:
    stmt = select(ProcessTemplate).where(ProcessTemplate.id == template_id)
    if for_update:
        stmt = stmt.with_for_update()
    template = db.session.execute(stmt).scalar_one_or_none()
    if template is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    return template


def _require_editable(template: ProcessTemplate, action: str) -> None:
    if not template.is_editable:
        raise ConflictError(
            "ProcessTemplate", "status", template.status,
            message=(
                f"ProcessTemplate {template.id} is {template.status}; "
                f"only DRAFT templates can be {action}"
            ),
        )


def _ensure_code_available(code: str | None, exclude_id: int | None = None) -> None:
    if not code:
        return
    stmt = select(ProcessTemplate.id).where(ProcessTemplate.code == code)
    if exclude_id is not None:
        stmt = stmt.where(ProcessTemplate.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("ProcessTemplate", "code", code)


def _step_models(cleaned_steps: list[dict]) -> list[RoutingStep]:
    return [RoutingStep(**s) for s in cleaned_steps]


def _replace_steps(template: ProcessTemplate, cleaned_steps: list[dict]) -> None:
    """Full replace of the step set; the delete is flushed before the inserts."""
    template.steps.clear()
    db.session.flush()
    template.steps.extend(_step_models(cleaned_steps))


def _commit(action: str, template_id: int | None = None) -> None:
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("ProcessTemplate %s rejected by constraint id=%s: %s", action, template_id, exc.orig)
        raise ConflictError(
            "ProcessTemplate", "code", None,
            message=f"ProcessTemplate {action} violates a uniqueness constraint",
        ) from exc
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("ProcessTemplate %s failed id=%s", action, template_id)
        raise


def _persisted_step_dicts(template: ProcessTemplate) -> list[dict]:
    return [s.to_dict() for s in sorted(template.steps, key=lambda s: s.sequence_number)]


def _apply_step_list(template: ProcessTemplate, steps: list[dict]) -> list[RoutingStep]:
    """Write sequence-engine output back onto the template's ORM steps.

    Steps carrying an ``id`` keep their row; steps without one are inserted;
    rows missing from ``steps`` are deleted by the orphan cascade.
    """
    by_id = {s.id: s for s in template.steps}
    rows = []
    for payload in steps:
        row = by_id.get(payload.get("id"))
        if row is None:
            row = RoutingStep(**{k: v for k, v in payload.items() if k not in ("id", "template_id")})
        else:
            row.sequence_number = payload["sequence_number"]
        rows.append(row)
    template.steps = rows
    return rows


# ── Template CRUD ────────────────────────────────────────────────────────────


def create_template(
    data: dict,
    created_by: str | None = None,
    parent_template_id: int | None = None,
) -> dict:
    """Create a DRAFT template together with its step list.

    Business rules:
        - name is required (≤ 100 chars); version defaults to "1.0".
        - code, if given, must be unique.
        - status is always DRAFT regardless of payload.
        - steps are renumbered 1..n in the order of their incoming sequence numbers.

    Args:
        data: Template payload from the blueprint.
        created_by: Actor recorded in created_by (immutable afterwards).
        parent_template_id: Lineage link, set by the version service.

    Returns:
        Serialized template with steps.

    Raises:
        ValidationError: Missing/oversized/invalid fields (nothing written).
        ConflictError: Duplicate code.
    """
    errors: dict = {}
    cleaned = _clean_template_fields(data, partial=False, errors=errors)
    code = _clean_str(data.get("code"))
    _check_len(errors, "code", code, CODE_MAX)
    steps = _clean_steps(data.get("steps"), errors)
    _check_window(errors, cleaned.get("effective_from"), cleaned.get("effective_to"))
    _raise_if_errors(errors, "Invalid process template")

    _ensure_code_available(code)

    template = ProcessTemplate(
        code=code,
        status=STATUS_DRAFT,
        parent_template_id=parent_template_id,
        created_by=created_by,
        updated_by=created_by,
        **cleaned,
    )
    template.steps = _step_models(steps)
    db.session.add(template)
    _commit("create")

    logger.info(
        "ProcessTemplate created id=%s code=%s version=%s steps=%d parent=%s",
        template.id, template.code, template.version, len(steps), parent_template_id,
    )
    return template.to_dict()


def get_template(template_id: int) -> dict:
    """Return a template with its steps sorted by sequence_number.

    Raises:
        NotFoundError: Unknown id.
    """
    return _get_template(template_id).to_dict()


def get_template_by_code(code: str) -> dict:
    template = db.session.execute(
        select(ProcessTemplate).where(ProcessTemplate.code == code)
    ).scalar_one_or_none()
    if template is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=code)
    return template.to_dict()


def update_template(template_id: int, data: dict, updated_by: str | None = None) -> dict:
    """Replace scalar fields and (optionally) the full step list of a DRAFT template.

    Only keys present in ``data`` are touched. When ``steps`` is present the
    stored list is replaced as a whole; there is no per-step diff. The status
    gate and all validation run before the session is modified, and a DB
    failure rolls the whole update back.

    Raises:
        NotFoundError: Unknown id.
        ConflictError: Template is not DRAFT.
        ValidationError: Invalid fields or steps.
    """
    template = _get_template(template_id, for_update=True)
    _require_editable(template, "updated")

    errors: dict = {}
    cleaned = _clean_template_fields(
        {k: data[k] for k in _UPDATABLE_FIELDS if k in data}, partial=True, errors=errors,
    )
    replace_steps = "steps" in data
    steps = _clean_steps(data.get("steps"), errors) if replace_steps else None
    _check_window(
        errors,
        cleaned.get("effective_from", template.effective_from),
        cleaned.get("effective_to", template.effective_to),
    )
    _raise_if_errors(errors, "Invalid process template")

    for field, value in cleaned.items():
        setattr(template, field, value)
    if replace_steps:
        try:
            _replace_steps(template, steps)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("ProcessTemplate step replace failed id=%s", template_id)
            raise
    template.updated_by = updated_by
    _commit("update", template_id)

    logger.info(
        "ProcessTemplate updated id=%s fields=%s steps_replaced=%s",
        template_id, sorted(cleaned), replace_steps,
    )
    return template.to_dict()


def delete_template(template_id: int) -> None:
    """Delete a DRAFT template and its steps.

    Raises:
        NotFoundError: Unknown id.
        ConflictError: Template is not DRAFT.
    """
    template = _get_template(template_id, for_update=True)
    if template.status not in DELETABLE_STATUSES:
        raise ConflictError(
            "ProcessTemplate", "status", template.status,
            message=f"ProcessTemplate {template_id} is {template.status}; only DRAFT templates can be deleted",
        )
    db.session.delete(template)
    _commit("delete", template_id)
    logger.info("ProcessTemplate deleted id=%s", template_id)


# ── Single-step operations (DRAFT only) ──────────────────────────────────────


def _get_step(step_id: int) -> RoutingStep:
    step = db.session.get(RoutingStep, step_id)
    if step is None:
        raise NotFoundError(resource="RoutingStep", resource_id=step_id)
    return step


def add_step(template_id: int, step_data: dict, updated_by: str | None = None) -> dict:
    """Append one step to a DRAFT template and return it.

    An explicit sequence_number inserts the step at that position instead.
    """
    template = _get_template(template_id, for_update=True)
    _require_editable(template, "edited")

    errors: dict = {}
    cleaned = _clean_step(step_data, 0, errors)
    _raise_if_errors(errors, "Invalid routing step")

    requested = cleaned.pop("sequence_number", None)
    steps = append_step(_persisted_step_dicts(template), cleaned)
    if requested is not None:
        steps = move_step_to(steps, len(steps) - 1, requested)
    rows = _apply_step_list(template, steps)
    new_step = next(r for r in rows if r.id is None)
    template.updated_by = updated_by
    _commit("add-step", template_id)

    logger.info(
        "RoutingStep added id=%s template_id=%s seq=%s", new_step.id, template_id, new_step.sequence_number,
    )
    return new_step.to_dict()


def update_step(step_id: int, step_data: dict, updated_by: str | None = None) -> dict:
    """Patch one step of a DRAFT template.

    A new sequence_number moves the step to that position; the rest of the
    list is renumbered around it.
    """
    step = _get_step(step_id)
    template = _get_template(step.template_id, for_update=True)
    _require_editable(template, "edited")

    merged = step.content_dict()
    merged.update({k: v for k, v in step_data.items() if k not in ("id", "template_id")})
    errors: dict = {}
    cleaned = _clean_step(merged, 0, errors)
    _raise_if_errors(errors, "Invalid routing step")

    requested = cleaned.pop("sequence_number", step.sequence_number)
    for field, value in cleaned.items():
        setattr(step, field, value)

    if requested != step.sequence_number:
        steps = _persisted_step_dicts(template)
        index = next(i for i, s in enumerate(steps) if s["id"] == step.id)
        _apply_step_list(template, move_step_to(steps, index, requested))
    template.updated_by = updated_by
    _commit("update-step", template.id)

    logger.info("RoutingStep updated id=%s template_id=%s", step_id, template.id)
    return step.to_dict()


def remove_step(step_id: int, updated_by: str | None = None) -> None:
    """Remove one step from a DRAFT template and close the numbering gap."""
    step = _get_step(step_id)
    template = _get_template(step.template_id, for_update=True)
    _require_editable(template, "edited")

    steps = _persisted_step_dicts(template)
    index = next(i for i, s in enumerate(steps) if s["id"] == step_id)
    _apply_step_list(template, remove_step_at(steps, index))
    template.updated_by = updated_by
    _commit("remove-step", template.id)
    logger.info("RoutingStep removed id=%s template_id=%s", step_id, template.id)


# ── Listing & aggregates ─────────────────────────────────────────────────────


def _escape_like(text: str) -> str:
    """Make ``%`` and ``_`` in user search text match literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filtered_query(status=None, search=None, product_sku=None):
    stmt = select(ProcessTemplate)
    if status:
        stmt = stmt.where(ProcessTemplate.status == status)
    if product_sku:
        stmt = stmt.where(ProcessTemplate.product_sku == product_sku)
    if search:
        pattern = f"%{_escape_like(search.strip())}%"
        stmt = stmt.where(
            or_(
                ProcessTemplate.name.ilike(pattern, escape="\\"),
                ProcessTemplate.code.ilike(pattern, escape="\\"),
            )
        )
    return stmt


def _empty_summary() -> dict:
    return {s.lower(): 0 for s in (STATUS_DRAFT, STATUS_ACTIVE, STATUS_INACTIVE, STATUS_SUPERSEDED)}


def get_status_summary(product_sku: str | None = None, search: str | None = None) -> dict:
    """Server-side DRAFT/ACTIVE/INACTIVE/SUPERSEDED totals (one GROUP BY query)."""
    sub = _filtered_query(search=search, product_sku=product_sku).subquery()
    rows = db.session.execute(
        select(sub.c.status, func.count()).group_by(sub.c.status)
    ).all()
    summary = _empty_summary()
    for status, count in rows:
        summary[status.lower()] = count
    summary["total"] = sum(summary.values())
    return summary


def list_templates(
    page: int = 0,
    size: int = DEFAULT_PAGE_SIZE,
    sort_by: str = "created_on",
    sort_dir: str = "desc",
    status: str | None = None,
    search: str | None = None,
    product_sku: str | None = None,
    summary_scope: str = "page",
) -> dict:
    """Paged template summaries.

    Args:
        page: 0-based page index.
        size: Page size, clamped to 1..MAX_PAGE_SIZE.
        sort_by: One of SORTABLE_FIELDS (default created_on).
        sort_dir: "asc" | "desc" (default desc).
        status / search / product_sku: Optional filters; search is a
            case-insensitive substring match on name or code.
        summary_scope: "page" counts statuses on the returned page only;
            "all" aggregates over the whole filtered collection.

    Returns:
        {content, page, size, total_elements, total_pages, first, last, summary}
    """
    errors: dict = {}
    if sort_by not in SORTABLE_FIELDS:
        errors["sort_by"] = f"sort_by must be one of: {', '.join(sorted(SORTABLE_FIELDS))}"
    sort_dir = (sort_dir or "desc").lower()
    if sort_dir not in ("asc", "desc"):
        errors["sort_dir"] = "sort_dir must be asc or desc"
    if status is not None:
        status = status.upper()
        if status not in TEMPLATE_STATUSES:
            errors["status"] = f"status must be one of: {', '.join(sorted(TEMPLATE_STATUSES))}"
    if summary_scope not in ("page", "all"):
        errors["summary"] = "summary must be page or all"
    _raise_if_errors(errors, "Invalid list parameters")

    page = max(int(page or 0), 0)
    size = min(max(int(size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)

    stmt = _filtered_query(status, search, product_sku)
    total = db.session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar_one()

    column = SORTABLE_FIELDS[sort_by]
    order = column.asc() if sort_dir == "asc" else column.desc()
    tie = ProcessTemplate.id.asc() if sort_dir == "asc" else ProcessTemplate.id.desc()
    items = db.session.execute(
        stmt.order_by(order, tie).limit(size).offset(page * size)
    ).scalars().all()

    if summary_scope == "all":
        summary = get_status_summary(product_sku=product_sku, search=search)
        if status:
            summary = {**_empty_summary(), status.lower(): summary[status.lower()]}
            summary["total"] = total
    else:
        summary = _empty_summary()
        for t in items:
            summary[t.status.lower()] += 1
        summary["total"] = len(items)

    total_pages = math.ceil(total / size) if total else 0
    return {
        "content": [t.to_summary_dict() for t in items],
        "page": page,
        "size": size,
        "total_elements": total,
        "total_pages": total_pages,
        "first": page == 0,
        "last": page >= total_pages - 1,
        "summary": summary,
    }


def list_templates_for_product(product_sku: str) -> list[dict]:
    """All templates of a product, newest version first."""
    items = db.session.execute(
        select(ProcessTemplate)
        .where(ProcessTemplate.product_sku == product_sku)
        .order_by(ProcessTemplate.created_on.desc(), ProcessTemplate.id.desc())
    ).scalars().all()
    return [t.to_summary_dict() for t in items]


def get_effective_template(product_sku: str, at: datetime | None = None) -> dict:
    """The ACTIVE template of a product whose window contains ``at`` (default now).

    Raises:
        NotFoundError: No effective template for the SKU.
    """
    candidates = db.session.execute(
        select(ProcessTemplate)
        .where(
            ProcessTemplate.product_sku == product_sku,
            ProcessTemplate.status == STATUS_ACTIVE,
        )
        .order_by(ProcessTemplate.effective_from.desc(), ProcessTemplate.id.desc())
    ).scalars().all()
    for template in candidates:
        if template.is_effective_at(at):
            return template.to_dict()
    raise NotFoundError(resource="Effective ProcessTemplate for product", resource_id=product_sku)
