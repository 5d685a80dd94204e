"""
Application-wide exception hierarchy.

Services raise these types; the blueprint registers one handler per type
and maps them to consistent HTTP status codes.

Usage:
    from process_routing.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProcessTemplate", resource_id=42)
    raise ValidationError("name is required", details={"name": "required"})
    raise ConflictError("ProcessTemplate", "status", "ACTIVE",
                        message="Only DRAFT templates can be updated")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "ProcessTemplate").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is missing, oversized or otherwise invalid.

    Nothing is written when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names
                 (``steps[1].operation_name`` for nested step fields).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current state of a resource.

    Two flavours share this type:
      - duplicate unique value (field="code")
      - lifecycle gate, e.g. editing a non-DRAFT template (field="status"),
        or a second ACTIVE template for a product (field="product_sku")

    Args:
        resource: Model name.
        field: The field whose current value blocks the operation.
        value: The conflicting value.
        message: Optional explicit message; defaults to the duplicate wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        if message is None:
            message = f"{resource} with {field}={value!r} already exists"
        super().__init__(message)

    @property
    def is_state_conflict(self) -> bool:
        return self.field != "code"


class ExclusivityRaceError(Exception):
    """Internal: a concurrent activation left another ACTIVE template for the SKU.

    Never surfaced to callers. The activation service rolls back and retries,
    then converts persistent failures into ConflictError.
    """

    def __init__(self, product_sku: str, competing_ids: list[int] | None = None) -> None:
        self.product_sku = product_sku
        self.competing_ids = competing_ids or []
        super().__init__(
            f"Another template is ACTIVE for product {product_sku!r}: {self.competing_ids}"
        )
