"""
Shared pytest fixtures for the process routing test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_template: factory creating DRAFT templates through the service layer
"""

import pytest

from process_routing import create_app
from process_routing.models import db as _db
from process_routing.services import process_template_service as pts


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


MELT_CAST_STEPS = [
    {"operation_name": "Melt", "operation_type": "PRODUCTION", "sequence_number": 1,
     "target_qty": 1500, "estimated_duration_minutes": 240},
    {"operation_name": "Cast", "operation_type": "PRODUCTION", "sequence_number": 2,
     "allows_split": True},
]


@pytest.fixture()
def make_template():
    """Return a factory: make_template(**overrides) -> serialized DRAFT template."""

    def _make(**kw):
        data = {
            "name": "Melt-Cast v1",
            "product_sku": "HR-COIL-2MM",
            "steps": [dict(s) for s in MELT_CAST_STEPS],
        }
        data.update(kw)
        return pts.create_template(data, created_by="tester")

    return _make
