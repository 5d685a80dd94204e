"""
Process Template: activation and deactivation.

Exclusivity rule: per product_sku, at most one template is ACTIVE and
effective at any moment.

activate_template() runs as one transaction, serialized per product SKU:
  1. acquire the in-process lock for the SKU
  2. SELECT ... FOR UPDATE every template row of the SKU (PostgreSQL row locks;
     SQLite serializes writers on its own)
  3. ACTIVE on the target, retire ACTIVE siblings when deactivate_others is set
     (the target's lineage parent → SUPERSEDED, anything else → INACTIVE)
  4. re-check that no other template of the SKU is still ACTIVE and effective
  5. commit, or roll back and retry on ExclusivityRaceError

Readers therefore never see two ACTIVE templates for one product, and never
see the retired siblings without the newly activated template.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from process_routing.core.exceptions import (
    ConflictError,
    ExclusivityRaceError,
    NotFoundError,
    ValidationError,
)
from process_routing.models import db
from process_routing.models.process_template import (
    STATUS_ACTIVE,
    STATUS_INACTIVE,
    STATUS_SUPERSEDED,
    ProcessTemplate,
    as_utc,
    validate_template_transition,
)
from process_routing.services.process_template_service import parse_dt

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

# ── Per-SKU serialization ────────────────────────────────────────────────────

_sku_locks: dict[str, threading.Lock] = {}
_sku_locks_guard = threading.Lock()


@contextmanager
def product_lock(product_sku: str | None):
    """Serialize activations of one product within this process."""
    if not product_sku:
        yield
        return
    with _sku_locks_guard:
        lock = _sku_locks.setdefault(product_sku, threading.Lock())
    with lock:
        yield


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _max_retries() -> int:
    return int(current_app.config.get("ACTIVATION_MAX_RETRIES", DEFAULT_MAX_RETRIES))


def _lock_product_rows(product_sku: str) -> list[ProcessTemplate]:
    return list(
        db.session.execute(
            select(ProcessTemplate)
            .where(ProcessTemplate.product_sku == product_sku)
            .order_by(ProcessTemplate.id)
            .with_for_update()
        ).scalars()
    )


def _windows_overlap(a: ProcessTemplate, b: ProcessTemplate) -> bool:
    """True when the [from, to) windows of two templates intersect (open ends allowed)."""
    a_from, a_to = as_utc(a.effective_from), as_utc(a.effective_to)
    b_from, b_to = as_utc(b.effective_from), as_utc(b.effective_to)
    if a_to is not None and b_from is not None and a_to <= b_from:
        return False
    if b_to is not None and a_from is not None and b_to <= a_from:
        return False
    return True


def _retire_siblings(target: ProcessTemplate, siblings: list[ProcessTemplate], now: datetime) -> list[tuple[int, str]]:
    """Move every other ACTIVE template of the product out of ACTIVE.

    The template the target was forked from becomes SUPERSEDED; any other
    sibling becomes INACTIVE. Their effectivity windows close at ``now``.
    """
    retired = []
    for sibling in siblings:
        if sibling.id == target.id or sibling.status != STATUS_ACTIVE:
            continue
        new_status = (
            STATUS_SUPERSEDED if sibling.id == target.parent_template_id else STATUS_INACTIVE
        )
        sibling.status = new_status
        start = as_utc(sibling.effective_from)
        sibling.effective_to = now if start is None or start < now else start
        sibling.updated_by = target.updated_by
        retired.append((sibling.id, new_status))
    return retired


def _verify_exclusive(target: ProcessTemplate, now: datetime) -> None:
    """Raise ExclusivityRaceError if another ACTIVE template of the SKU still overlaps."""
    db.session.flush()
    # populate_existing: rows another writer committed must not be read from the identity map
    others = db.session.execute(
        select(ProcessTemplate)
        .where(
            ProcessTemplate.product_sku == target.product_sku,
            ProcessTemplate.status == STATUS_ACTIVE,
            ProcessTemplate.id != target.id,
        )
        .execution_options(populate_existing=True)
    ).scalars().all()
    competing = [t.id for t in others if t.is_effective_at(now) or _windows_overlap(t, target)]
    if competing:
        raise ExclusivityRaceError(target.product_sku, competing)


def _activate_once(
    template_id: int,
    deactivate_others: bool,
    effective_from: datetime | None,
    activated_by: str | None,
) -> ProcessTemplate:
    peek = db.session.get(ProcessTemplate, template_id)
    if peek is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    product_sku = peek.product_sku

    with product_lock(product_sku):
        siblings = _lock_product_rows(product_sku) if product_sku else []
        db.session.refresh(peek, with_for_update=True)
        target = peek
        if target.product_sku != product_sku:
            # SKU edited between the peek and the lock; start over under the right lock
            raise ExclusivityRaceError(product_sku or "", [target.id])

        if not validate_template_transition(target.status, STATUS_ACTIVE):
            raise ConflictError(
                "ProcessTemplate", "status", target.status,
                message=f"ProcessTemplate {template_id} cannot be activated from {target.status}",
            )

        now = _utcnow()
        target.effective_from = effective_from or as_utc(target.effective_from) or now
        if target.effective_to is not None and as_utc(target.effective_to) <= max(now, target.effective_from):
            # Re-activation reopens a window closed by an earlier deactivation
            target.effective_to = None
        target.status = STATUS_ACTIVE
        target.updated_by = activated_by

        if product_sku:
            if deactivate_others:
                retired = _retire_siblings(target, siblings, now)
                for sibling_id, new_status in retired:
                    logger.info(
                        "ProcessTemplate retired id=%s status=%s product_sku=%s by_activation_of=%s",
                        sibling_id, new_status, product_sku, template_id,
                        extra={"template_id": sibling_id, "product_sku": product_sku},
                    )
            else:
                clashing = [
                    s.id for s in siblings
                    if s.id != target.id and s.status == STATUS_ACTIVE
                    and (s.is_effective_at(now) or _windows_overlap(s, target))
                ]
                if clashing:
                    raise ConflictError(
                        "ProcessTemplate", "product_sku", product_sku,
                        message=(
                            f"Product {product_sku!r} already has an ACTIVE template {clashing}; "
                            "activate with deactivate_others to replace it"
                        ),
                    )
            _verify_exclusive(target, now)

        db.session.commit()
        return target


def activate_template(
    template_id: int,
    deactivate_others: bool = False,
    effective_from: str | datetime | None = None,
    activated_by: str | None = None,
) -> dict:
    """Make a template the ACTIVE definition of its product.

    Args:
        template_id: Template to activate (DRAFT or INACTIVE).
        deactivate_others: Retire every other ACTIVE template of the same SKU
            in the same transaction.
        effective_from: Start of effectivity; defaults to the stored value, else now.
        activated_by: Actor recorded in updated_by.

    Returns:
        Serialized activated template.

    Raises:
        NotFoundError: Unknown id.
        ConflictError: Status does not allow activation, another ACTIVE template
            exists and deactivate_others is false, or concurrent activations
            kept colliding after all retries.
        ValidationError: effective_from is not a valid date/datetime.
    """
    try:
        start = parse_dt(effective_from)
    except ValueError as exc:
        raise ValidationError(
            "Invalid activation request",
            details={"effective_from": "must be an ISO-8601 date or datetime"},
        ) from exc

    attempts = _max_retries()
    for attempt in range(1, attempts + 1):
        try:
            template = _activate_once(template_id, bool(deactivate_others), start, activated_by)
        except ExclusivityRaceError as exc:
            db.session.rollback()
            logger.warning(
                "Activation race template_id=%s attempt=%d/%d: %s",
                template_id, attempt, attempts, exc,
            )
            continue
        except (ConflictError, NotFoundError, ValidationError):
            db.session.rollback()
            raise

        logger.info(
            "ProcessTemplate activated id=%s product_sku=%s effective_from=%s deactivate_others=%s",
            template.id, template.product_sku, template.effective_from, bool(deactivate_others),
            extra={"template_id": template.id, "product_sku": template.product_sku, "actor": activated_by},
        )
        return template.to_dict()

    raise ConflictError(
        "ProcessTemplate", "product_sku", None,
        message=(
            f"ProcessTemplate {template_id} could not be activated: "
            "a concurrent activation for the same product kept winning"
        ),
    )


def deactivate_template(template_id: int, deactivated_by: str | None = None) -> dict:
    """ACTIVE → INACTIVE; closes the effectivity window now. No cascade.

    Raises:
        NotFoundError: Unknown id.
        ConflictError: Template is not ACTIVE.
    """
    template = db.session.execute(
        select(ProcessTemplate).where(ProcessTemplate.id == template_id).with_for_update()
    ).scalar_one_or_none()
    if template is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    if not validate_template_transition(template.status, STATUS_INACTIVE):
        raise ConflictError(
            "ProcessTemplate", "status", template.status,
            message=f"Only ACTIVE templates can be deactivated; {template_id} is {template.status}",
        )

    now = _utcnow()
    start = as_utc(template.effective_from)
    template.status = STATUS_INACTIVE
    template.effective_to = now if start is None or start < now else start
    template.updated_by = deactivated_by
    db.session.commit()

    logger.info(
        "ProcessTemplate deactivated id=%s product_sku=%s", template_id, template.product_sku,
        extra={"template_id": template_id, "product_sku": template.product_sku, "actor": deactivated_by},
    )
    return template.to_dict()
