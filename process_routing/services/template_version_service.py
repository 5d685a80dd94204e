"""
Process Template: version forking.

A new version is a separate DRAFT template:
  - name / description / product_sku copied from the source
  - version label supplied by the caller or incremented mechanically
  - steps deep-copied in order with their ids dropped (new rows on insert)
  - parent_template_id pointing back at the source (lineage)

The source template is never modified here. It is retired later, and only
if the new version is activated with deactivate_others (it then becomes
SUPERSEDED, see template_activation_service).
"""

from __future__ import annotations

import logging
import re

from process_routing.models import db
from process_routing.models.process_template import CODE_MAX, ProcessTemplate
from process_routing.core.exceptions import NotFoundError, ValidationError
from process_routing.services import process_template_service as store
from process_routing.services.routing_sequence import strip_identity

logger = logging.getLogger(__name__)


def next_version_label(label: str | None) -> str:
    """Increment a version label.

    The leading number is bumped and any minor part reset:
        "1.0" → "2.0", "2.3" → "3.0", "V1" → "V2", "v7" → "v8".
    Blank labels become "2.0"; labels without digits get ".2" appended.
    """
    label = (label or "").strip()
    if not label:
        return "2.0"
    match = re.match(r"^(\D*)(\d+)((?:\.\d+)*)(.*)$", label)
    if not match:
        return f"{label}.2"
    prefix, major, minors, suffix = match.groups()
    reset = "".join(".0" for _ in minors.split(".")[1:]) if minors else ""
    return f"{prefix}{int(major) + 1}{reset}{suffix}"


def _derived_code(source: ProcessTemplate, version: str) -> str | None:
    if not source.code:
        return None
    return f"{source.code}-{version}"[:CODE_MAX]


def create_new_version(
    template_id: int,
    version: str | None = None,
    created_by: str | None = None,
) -> dict:
    """Fork template ``template_id`` into a new DRAFT version.

    Args:
        template_id: Source template (any status).
        version: Optional explicit label; defaults to next_version_label(source.version).
        created_by: Actor for the new template.

    Returns:
        Serialized new template (status DRAFT, fresh id, copied steps).

    Raises:
        NotFoundError: Source does not exist.
        ValidationError: Explicit version label is invalid.
        ConflictError: Derived code already taken.
    """
    source = db.session.get(ProcessTemplate, template_id)
    if source is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)

    if version is not None and not str(version).strip():
        raise ValidationError("Invalid version", details={"version": "version cannot be empty"})
    label = str(version).strip() if version is not None else next_version_label(source.version)

    ordered = sorted(source.steps, key=lambda s: s.sequence_number)
    payload = {
        "code": _derived_code(source, label),
        "name": source.name,
        "description": source.description,
        "product_sku": source.product_sku,
        "version": label,
        "steps": strip_identity(s.content_dict() for s in ordered),
    }
    new_template = store.create_template(
        payload, created_by=created_by, parent_template_id=source.id,
    )

    logger.info(
        "ProcessTemplate version forked source_id=%s new_id=%s version=%s→%s steps=%d",
        source.id, new_template["id"], source.version, label, len(payload["steps"]),
    )
    return new_template


def get_lineage(template_id: int) -> list[dict]:
    """Summaries from ``template_id`` back through its ancestors (self first)."""
    template = db.session.get(ProcessTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="ProcessTemplate", resource_id=template_id)
    chain, seen = [], set()
    while template is not None and template.id not in seen:
        seen.add(template.id)
        chain.append(template.to_summary_dict())
        template = template.parent
    return chain
