"""Process Template blueprint: management API for production routings.

Endpoint groups:
  Template CRUD        POST/GET       /api/v1/process-templates
                       GET/PUT/DELETE /api/v1/process-templates/<id>
                       GET            /api/v1/process-templates/code/<code>
  Status summary       GET  /api/v1/process-templates/summary
  Lifecycle            POST /api/v1/process-templates/<id>/activate
                       POST /api/v1/process-templates/<id>/deactivate
  Versions             POST /api/v1/process-templates/<id>/versions
                       GET  /api/v1/process-templates/<id>/lineage
  Product lookups      GET  /api/v1/process-templates/product/<sku>
                       GET  /api/v1/process-templates/product/<sku>/effective
  Single steps         POST /api/v1/process-templates/<id>/steps
                       PUT/DELETE /api/v1/process-templates/steps/<step_id>

The acting user is taken from the X-User header (set by the gateway) and
defaults to "system". Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

import process_routing.services.process_template_service as pts
import process_routing.services.template_activation_service as activation
import process_routing.services.template_version_service as versions
from process_routing.blueprints import page_args
from process_routing.core.exceptions import ConflictError, NotFoundError, ValidationError
from process_routing.utils.errors import E, api_error

logger = logging.getLogger(__name__)

process_templates_bp = Blueprint(
    "process_templates", __name__, url_prefix="/api/v1/process-templates",
)

_TRUE = frozenset({"1", "true", "yes", "on"})


# ── Request helpers ───────────────────────────────────────────────────────────


def _actor() -> str:
    return (request.headers.get("X-User") or "").strip() or "system"


def _json_body() -> dict:
    if not request.data:
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE


# ── Error handlers ────────────────────────────────────────────────────────────


@process_templates_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@process_templates_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@process_templates_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    code = E.CONFLICT_STATE if error.is_state_conflict else E.CONFLICT_DUPLICATE
    return api_error(code, str(error))


@process_templates_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in process_templates_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Template CRUD
# ═════════════════════════════════════════════════════════════════════════


@process_templates_bp.route("", methods=["POST"])
def create_template():
    """Create a DRAFT template with its step list.

    Body: {name, code?, description?, product_sku?, version?, effective_from?,
           effective_to?, steps: [...]}
    Returns: 201 with the created template.
    """
    template = pts.create_template(_json_body(), created_by=_actor())
    return jsonify(template), 201


@process_templates_bp.route("", methods=["GET"])
def list_templates():
    """Paged template summaries.

    Query params: page, size, sort_by, sort_dir, status, search, product_sku,
                  summary (page | all)
    """
    page, size = page_args()
    result = pts.list_templates(
        page=page,
        size=size,
        sort_by=request.args.get("sort_by", "created_on"),
        sort_dir=request.args.get("sort_dir", "desc"),
        status=request.args.get("status") or None,
        search=request.args.get("search") or None,
        product_sku=request.args.get("product_sku") or None,
        summary_scope=request.args.get("summary", "page"),
    )
    return jsonify(result), 200


@process_templates_bp.route("/summary", methods=["GET"])
def status_summary():
    """Status totals over the whole (optionally filtered) collection."""
    summary = pts.get_status_summary(
        product_sku=request.args.get("product_sku") or None,
        search=request.args.get("search") or None,
    )
    return jsonify(summary), 200


@process_templates_bp.route("/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(pts.get_template(template_id)), 200


@process_templates_bp.route("/code/<string:code>", methods=["GET"])
def get_template_by_code(code):
    return jsonify(pts.get_template_by_code(code)), 200


@process_templates_bp.route("/<int:template_id>", methods=["PUT"])
def update_template(template_id):
    """Replace fields and, when ``steps`` is present, the full step list (DRAFT only)."""
    template = pts.update_template(template_id, _json_body(), updated_by=_actor())
    return jsonify(template), 200


@process_templates_bp.route("/<int:template_id>", methods=["DELETE"])
def delete_template(template_id):
    pts.delete_template(template_id)
    return "", 204


# ═════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═════════════════════════════════════════════════════════════════════════


@process_templates_bp.route("/<int:template_id>/activate", methods=["POST"])
def activate_template(template_id):
    """Activate a DRAFT or INACTIVE template.

    Parameters may be sent in the JSON body or the query string:
        deactivate_others - retire every other ACTIVE template of the product
        effective_from    - ISO date/datetime; defaults to now
    """
    data = _json_body()
    template = activation.activate_template(
        template_id,
        deactivate_others=_flag(data.get("deactivate_others", request.args.get("deactivate_others"))),
        effective_from=data.get("effective_from", request.args.get("effective_from")),
        activated_by=_actor(),
    )
    return jsonify(template), 200


@process_templates_bp.route("/<int:template_id>/deactivate", methods=["POST"])
def deactivate_template(template_id):
    template = activation.deactivate_template(template_id, deactivated_by=_actor())
    return jsonify(template), 200


# ═════════════════════════════════════════════════════════════════════════
# Versions
# ═════════════════════════════════════════════════════════════════════════


@process_templates_bp.route("/<int:template_id>/versions", methods=["POST"])
def create_version(template_id):
    """Fork a new DRAFT version. Body (optional): {version}."""
    data = _json_body()
    template = versions.create_new_version(
        template_id,
        version=data.get("version", request.args.get("version")),
        created_by=_actor(),
    )
    return jsonify(template), 201


@process_templates_bp.route("/<int:template_id>/lineage", methods=["GET"])
def lineage(template_id):
    return jsonify({"items": versions.get_lineage(template_id)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Product lookups
# ═════════════════════════════════════════════════════════════════════════


@process_templates_bp.route("/product/<string:product_sku>", methods=["GET"])
def templates_for_product(product_sku):
    items = pts.list_templates_for_product(product_sku)
    return jsonify({"items": items, "total": len(items)}), 200


@process_templates_bp.route("/product/<string:product_sku>/effective", methods=["GET"])
def effective_template(product_sku):
    """The ACTIVE template in effect for a product. Query param ``at`` (ISO) defaults to now."""
    try:
        at = pts.parse_dt(request.args.get("at"))
    except ValueError as exc:
        raise ValidationError(
            "Invalid effective-template query", details={"at": "must be an ISO-8601 date or datetime"},
        ) from exc
    return jsonify(pts.get_effective_template(product_sku, at=at)), 200


# ═════════════════════════════════════════════════════════════════════════
# Single steps (DRAFT only)
# ═════════════════════════════════════════════════════════════════════════


@process_templates_bp.route("/<int:template_id>/steps", methods=["POST"])
def add_step(template_id):
    step = pts.add_step(template_id, _json_body(), updated_by=_actor())
    return jsonify(step), 201


@process_templates_bp.route("/steps/<int:step_id>", methods=["PUT"])
def update_step(step_id):
    step = pts.update_step(step_id, _json_body(), updated_by=_actor())
    return jsonify(step), 200


@process_templates_bp.route("/steps/<int:step_id>", methods=["DELETE"])
def remove_step(step_id):
    pts.remove_step(step_id, updated_by=_actor())
    return "", 204
