"""
Shared pytest fixtures for the ITP tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project / lot: Pre-created Project and Lot rows
    - make_itp: factory that assigns a template with the given items to a lot
    - bridge: httpx MockTransport handler that forwards to the Flask test client
"""

import httpx
import pytest

from itp_tracker import create_app
from itp_tracker.models import db as _db
from itp_tracker.models.project import Lot, Project
from itp_tracker.services import itp_service, template_service

BASE = "/api/v1"


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


@pytest.fixture()
def project():
    p = Project(name="Harbour Road Upgrade", code="HRU")
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def lot(project):
    lt = Lot(project_id=project.id, lot_number="LOT-001", description="Subgrade CH 0-200",
             activity_type="earthworks")
    _db.session.add(lt)
    _db.session.commit()
    return lt


@pytest.fixture()
def make_itp(project, lot):
    """Assign a template built from *items* to the default lot (or *target_lot*).

    Each item is a dict of checklist item fields; description defaults to
    "Item <n>".  Returns the ITPInstance.
    """

    def _make(*items, target_lot=None):
        target = target_lot or lot
        raw = [{"description": f"Item {n}", **item} for n, item in enumerate(items, start=1)]
        template = template_service.create_template(project.id, {
            "name": "Earthworks ITP",
            "activity_type": "earthworks",
            "checklist_items": raw or [{"description": "Item 1"}],
        })
        return itp_service.assign_template(target.id, template.id, "tester")

    return _make


# ── Offline client bridge ────────────────────────────────────────────────


class FlaskBridge:
    """MockTransport handler forwarding httpx requests to a Flask test client.

    Set ``online = False`` to make every request raise httpx.ConnectError,
    the way a dropped site connection does.
    """

    def __init__(self, client):
        self.client = client
        self.online = True
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("Network is unreachable", request=request)
        self.requests.append((request.method, request.url.path))
        headers = {
            k: v for k, v in request.headers.items()
            if k.lower() == "content-type" or k.lower().startswith("x-user-")
        }
        resp = self.client.open(
            request.url.path,
            method=request.method,
            query_string=request.url.query.decode(),
            data=request.content,
            headers=headers,
        )
        return httpx.Response(
            resp.status_code, content=resp.get_data(), headers={"content-type": resp.content_type},
        )


@pytest.fixture()
def bridge(client):
    return FlaskBridge(client)
