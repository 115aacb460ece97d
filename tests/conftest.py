"""
Shared pytest fixtures for the BrandForge stage engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: Pre-created Organization (BASIC plan, empty ledger)
    - project: Pre-created Project with venture + brand stages
    - headers: X-Org-Id / X-User-Id headers for the org
    - make_org / make_project: factories for extra rows
"""

import pytest

from brandforge import create_app
from brandforge.models import db as _db
from brandforge.models.organization import Organization


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
        # Providers may be swapped by a test; rebuild from config each time
        app.extensions["ai_providers"].reset()
        yield
        app.extensions["ai_providers"].reset()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _make_org(*, name="Acme Studio", slug="acme", plan="BASIC", limit=100_000,
             used=0, bonus=0, reset_date=None):
    """Create an Organization directly in DB."""
    org = Organization(
        name=name, slug=slug, plan=plan,
        monthly_token_limit=limit, monthly_tokens_used=used, bonus_tokens=bonus,
    )
    if reset_date is not None:
        org.token_reset_date = reset_date
    _db.session.add(org)
    _db.session.flush()
    return org


def _make_project(org_id, *, name="Lumen", modules=("venture", "brand")):
    """Create a Project with catalog stages through the service layer."""
    from brandforge.services.stage_service import create_project
    return create_project(org_id, name, list(modules), created_by="tester")


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    o = _make_org()
    _db.session.commit()
    return o


@pytest.fixture()
def project(org):
    return _make_project(org.id)


@pytest.fixture()
def headers(org):
    return {"X-Org-Id": str(org.id), "X-User-Id": "user-1"}


@pytest.fixture()
def make_org():
    """Factory fixture: ``make_org(limit=1000, used=900, bonus=500)``."""
    return _make_org


@pytest.fixture()
def make_project():
    """Factory fixture: ``make_project(org_id, modules=("brand",))``."""
    return _make_project
