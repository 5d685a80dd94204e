"""
MES Process Routing
Process template domain models.

Models:
    - ProcessTemplate:  design-time, versioned definition of a manufacturing process
    - RoutingStep:      one ordered operation within a template

Architecture:
    ProcessTemplate ──1:N──▶ RoutingStep          (owned, cascade delete)
    ProcessTemplate ──N:1──▶ ProcessTemplate      (lineage: parent_template_id)

Lifecycle states:
    ProcessTemplate:  DRAFT → ACTIVE → INACTIVE → ACTIVE
                      ACTIVE → INACTIVE | SUPERSEDED  (sibling activated with deactivate_others)
"""

from datetime import datetime, timezone

from process_routing.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STATUS_DRAFT = "DRAFT"
STATUS_ACTIVE = "ACTIVE"
STATUS_INACTIVE = "INACTIVE"
STATUS_SUPERSEDED = "SUPERSEDED"

TEMPLATE_STATUSES = {STATUS_DRAFT, STATUS_ACTIVE, STATUS_INACTIVE, STATUS_SUPERSEDED}

# Only DRAFT templates accept field, step or delete mutations
EDITABLE_STATUSES = frozenset({STATUS_DRAFT})
DELETABLE_STATUSES = frozenset({STATUS_DRAFT})

DEFAULT_VERSION = "1.0"

OPERATION_TYPES = {
    "PRODUCTION", "QUALITY_CHECK", "PACKAGING", "ASSEMBLY", "INSPECTION",
}
DEFAULT_OPERATION_TYPE = "PRODUCTION"

STEP_STATUSES = {"ACTIVE", "INACTIVE"}

NAME_MAX = 100
CODE_MAX = 50
DESCRIPTION_MAX = 500
SKU_MAX = 50
# Upper bound of the 32-bit Integer column holding step durations
DURATION_MINUTES_MAX = 2_147_483_647
VERSION_MAX = 20


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

TEMPLATE_TRANSITIONS = {
    STATUS_DRAFT:      [STATUS_ACTIVE],
    STATUS_ACTIVE:     [STATUS_INACTIVE, STATUS_SUPERSEDED],
    STATUS_INACTIVE:   [STATUS_ACTIVE],
    STATUS_SUPERSEDED: [],
}


def validate_template_transition(old_status, new_status):
    """Return True if ProcessTemplate status transition is valid."""
    return new_status in TEMPLATE_TRANSITIONS.get(old_status, [])


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProcessTemplate
# ═════════════════════════════════════════════════════════════════════════════


class ProcessTemplate(db.Model):
    """
    Design-time process definition linked to a product via product_sku.

    At most one template per product_sku is ACTIVE and effective at a time;
    that rule is enforced by the activation service, not by a constraint.
    """

    __tablename__ = "process_templates"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(CODE_MAX), unique=True, nullable=True)
    name = db.Column(db.String(NAME_MAX), nullable=False)
    description = db.Column(db.String(DESCRIPTION_MAX), nullable=True)
    product_sku = db.Column(db.String(SKU_MAX), nullable=True, index=True)

    status = db.Column(
        db.String(20), nullable=False, default=STATUS_DRAFT,
        comment="DRAFT | ACTIVE | INACTIVE | SUPERSEDED",
    )
    version = db.Column(db.String(VERSION_MAX), nullable=False, default=DEFAULT_VERSION)
    effective_from = db.Column(db.DateTime(timezone=True), nullable=True)
    effective_to = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Exclusive upper bound of the effectivity window",
    )

    parent_template_id = db.Column(
        db.Integer, db.ForeignKey("process_templates.id", ondelete="SET NULL"),
        nullable=True, index=True,
        comment="Template this version was forked from",
    )

    # Provenance
    created_on = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    created_by = db.Column(db.String(100), nullable=True)
    updated_on = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    updated_by = db.Column(db.String(100), nullable=True)

    # ── Constraints ──────────────────────────────────────────────────────
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('DRAFT','ACTIVE','INACTIVE','SUPERSEDED')",
            name="ck_process_template_status",
        ),
        db.Index("ix_process_templates_sku_status", "product_sku", "status"),
    )

    # ── Relationships ────────────────────────────────────────────────────
    steps = db.relationship(
        "RoutingStep", backref="template",
        cascade="all, delete-orphan", order_by="RoutingStep.sequence_number",
    )
    parent = db.relationship(
        "ProcessTemplate", remote_side=[id], foreign_keys=[parent_template_id],
    )

    @property
    def is_editable(self):
        return self.status in EDITABLE_STATUSES

    def is_effective_at(self, at=None):
        """ACTIVE and ``at`` falls within [effective_from, effective_to)."""
        if self.status != STATUS_ACTIVE:
            return False
        at = as_utc(at) or datetime.now(timezone.utc)
        start = as_utc(self.effective_from)
        end = as_utc(self.effective_to)
        if start is not None and at < start:
            return False
        if end is not None and at >= end:
            return False
        return True

    @property
    def is_effective(self):
        return self.is_effective_at()

    def to_summary_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "product_sku": self.product_sku,
            "status": self.status,
            "version": self.version,
            "is_effective": self.is_effective,
            "step_count": len(self.steps),
            "parent_template_id": self.parent_template_id,
            "created_on": _iso(self.created_on),
        }

    def to_dict(self, include_steps=True):
        result = {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "product_sku": self.product_sku,
            "status": self.status,
            "version": self.version,
            "effective_from": _iso(self.effective_from),
            "effective_to": _iso(self.effective_to),
            "is_effective": self.is_effective,
            "parent_template_id": self.parent_template_id,
            "created_on": _iso(self.created_on),
            "created_by": self.created_by,
            "updated_on": _iso(self.updated_on),
            "updated_by": self.updated_by,
            "step_count": len(self.steps),
        }
        if include_steps:
            ordered = sorted(self.steps, key=lambda s: s.sequence_number)
            result["steps"] = [s.to_dict() for s in ordered]
        return result

    def __repr__(self):
        return f"<ProcessTemplate {self.id}: {self.name} v{self.version} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. RoutingStep
# ═════════════════════════════════════════════════════════════════════════════


class RoutingStep(db.Model):
    """
    One operation in a template's routing.
    sequence_number is dense and 1-based within a template.
    """

    __tablename__ = "process_template_steps"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("process_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence_number = db.Column(db.Integer, nullable=False)

    operation_name = db.Column(db.String(NAME_MAX), nullable=False)
    operation_type = db.Column(
        db.String(50), nullable=False, default=DEFAULT_OPERATION_TYPE,
        comment="PRODUCTION | QUALITY_CHECK | PACKAGING | ASSEMBLY | INSPECTION",
    )
    operation_code = db.Column(db.String(CODE_MAX), nullable=True)
    description = db.Column(db.String(DESCRIPTION_MAX), nullable=True)

    target_qty = db.Column(db.Numeric(15, 4), nullable=True)
    estimated_duration_minutes = db.Column(db.Integer, nullable=True)

    # Behaviour flags
    is_parallel = db.Column(db.Boolean, nullable=False, default=False)
    mandatory_flag = db.Column(db.Boolean, nullable=False, default=True)
    produces_output_batch = db.Column(db.Boolean, nullable=False, default=True)
    allows_split = db.Column(db.Boolean, nullable=False, default=False)
    allows_merge = db.Column(db.Boolean, nullable=False, default=False)

    status = db.Column(db.String(20), nullable=True, default="ACTIVE")

    created_on = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_template_steps_template_seq", "template_id", "sequence_number"),
    )

    def content_dict(self):
        """Step content without identity - what a version fork copies."""
        return {
            "sequence_number": self.sequence_number,
            "operation_name": self.operation_name,
            "operation_type": self.operation_type,
            "operation_code": self.operation_code,
            "description": self.description,
            "target_qty": float(self.target_qty) if self.target_qty is not None else None,
            "estimated_duration_minutes": self.estimated_duration_minutes,
            "is_parallel": self.is_parallel,
            "mandatory_flag": self.mandatory_flag,
            "produces_output_batch": self.produces_output_batch,
            "allows_split": self.allows_split,
            "allows_merge": self.allows_merge,
            "status": self.status,
        }

    def to_dict(self):
        result = {"id": self.id, "template_id": self.template_id}
        result.update(self.content_dict())
        return result

    def __repr__(self):
        return f"<RoutingStep {self.id}: #{self.sequence_number} {self.operation_name}>"
