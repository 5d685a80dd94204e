"""process_templates

Creates the process routing tables:
  - process_templates       - versioned process definitions per product SKU
  - process_template_steps  - ordered routing steps owned by a template

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7f3a91c2d4e5
Revises:
Create Date: 2026-10-19 09:12:44.318207
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7f3a91c2d4e5'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── ProcessTemplate ───────────────────────────────────────────────────
    if "process_templates" not in existing:
        op.create_table(
            "process_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=True),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("product_sku", sa.String(length=50), nullable=True),
            sa.Column(
                "status", sa.String(length=20), nullable=False,
                server_default="DRAFT",
                comment="DRAFT | ACTIVE | INACTIVE | SUPERSEDED",
            ),
            sa.Column("version", sa.String(length=20), nullable=False, server_default="1.0"),
            sa.Column("effective_from", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "effective_to", sa.DateTime(timezone=True), nullable=True,
                comment="Exclusive upper bound of the effectivity window",
            ),
            sa.Column(
                "parent_template_id", sa.Integer(), nullable=True,
                comment="Template this version was forked from",
            ),
            sa.Column("created_on", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=100), nullable=True),
            sa.Column("updated_on", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_by", sa.String(length=100), nullable=True),
            sa.CheckConstraint(
                "status IN ('DRAFT','ACTIVE','INACTIVE','SUPERSEDED')",
                name="ck_process_template_status",
            ),
            sa.ForeignKeyConstraint(
                ["parent_template_id"], ["process_templates.id"], ondelete="SET NULL",
            ),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index("ix_process_templates_product_sku", "process_templates", ["product_sku"])
        op.create_index("ix_process_templates_parent_template_id", "process_templates", ["parent_template_id"])
        op.create_index("ix_process_templates_sku_status", "process_templates", ["product_sku", "status"])

    # ── RoutingStep ───────────────────────────────────────────────────────
    if "process_template_steps" not in existing:
        op.create_table(
            "process_template_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("sequence_number", sa.Integer(), nullable=False),
            sa.Column("operation_name", sa.String(length=100), nullable=False),
            sa.Column(
                "operation_type", sa.String(length=50), nullable=False,
                server_default="PRODUCTION",
                comment="PRODUCTION | QUALITY_CHECK | PACKAGING | ASSEMBLY | INSPECTION",
            ),
            sa.Column("operation_code", sa.String(length=50), nullable=True),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("target_qty", sa.Numeric(precision=15, scale=4), nullable=True),
            sa.Column("estimated_duration_minutes", sa.Integer(), nullable=True),
            sa.Column("is_parallel", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("mandatory_flag", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("produces_output_batch", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("allows_split", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("allows_merge", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("status", sa.String(length=20), nullable=True, server_default="ACTIVE"),
            sa.Column("created_on", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["template_id"], ["process_templates.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_template_steps_template_seq", "process_template_steps",
            ["template_id", "sequence_number"],
        )


def downgrade():
    op.drop_index("ix_template_steps_template_seq", table_name="process_template_steps")
    op.drop_table("process_template_steps")
    op.drop_index("ix_process_templates_sku_status", table_name="process_templates")
    op.drop_index("ix_process_templates_parent_template_id", table_name="process_templates")
    op.drop_index("ix_process_templates_product_sku", table_name="process_templates")
    op.drop_table("process_templates")
