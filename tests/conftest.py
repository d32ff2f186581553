"""Shared fixtures: in-memory database, seeded projects, file storage and API client."""
import io

import pytest
from fastapi.testclient import TestClient

from permit_core import schemas
from permit_core.api.main import create_app
from permit_core.config import Settings
from permit_core.database import build_engine, build_session_factory
from permit_core.file_storage import IncomingFile, LocalFileStorage
from permit_core.models import Base, Project
from permit_core.task_lifecycle import TaskLifecycleManager

TENANT_ID = 1
OTHER_TENANT_ID = 2
CREATOR_ID = 100
FIRST_APPROVER_ID = 201
SECOND_APPROVER_ID = 202


def seed_projects(session):
    """Add two projects for the main tenant and one for another tenant."""
    eng = Project(tenant_id=TENANT_ID, code="ENG", name="Engineering")
    ops = Project(tenant_id=TENANT_ID, code="OPS", name="Operations")
    foreign = Project(tenant_id=OTHER_TENANT_ID, code="ENG", name="Partner Engineering")
    session.add_all([eng, ops, foreign])
    session.commit()
    return {"eng": eng.id, "ops": ops.id, "foreign": foreign.id}


def make_draft(project_id: int, title: str = "Fix login redirect", priority_id: int = 1, **kwargs) -> schemas.TaskCreate:
    return schemas.TaskCreate(project_id=project_id, title=title, priority_id=priority_id, **kwargs)


def make_upload(filename: str = "evidence.pdf", content: bytes = b"%PDF-1.4 test", content_type=None) -> IncomingFile:
    return IncomingFile(filename=filename, file=io.BytesIO(content), content_type=content_type)


def stored_files(upload_dir) -> list:
    """All files currently written under the upload directory."""
    return [path for path in upload_dir.rglob("*") if path.is_file()]


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def settings(upload_dir):
    return Settings(database_url="sqlite://", upload_dir=str(upload_dir))


@pytest.fixture
def engine(settings):
    engine = build_engine(settings)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def projects(db):
    return seed_projects(db)


@pytest.fixture
def storage(settings):
    return LocalFileStorage(settings)


@pytest.fixture
def manager(db, storage, settings):
    return TaskLifecycleManager(db, storage, settings)


@pytest.fixture
def app(settings):
    app = create_app(settings)
    Base.metadata.create_all(app.state.engine)
    yield app
    app.state.engine.dispose()


@pytest.fixture
def api_projects(app):
    session = app.state.session_factory()
    try:
        return seed_projects(session)
    finally:
        session.close()


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    return {"X-Tenant-ID": str(TENANT_ID), "X-User-ID": str(CREATOR_ID), "X-Role-ID": "1"}
