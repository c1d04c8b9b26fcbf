import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from cellops.main import app
from cellops import models, notify, schemas
from cellops.auth import create_access_token
from cellops.database import Base, enable_sqlite_foreign_keys, get_db
from cellops.logging_config import clear_log_context
from cellops.services import processes

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_cellops.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def clear_outbox():
    notify.NOTIFICATION_OUTBOX.clear()
    clear_log_context()
    yield
    notify.NOTIFICATION_OUTBOX.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def make_user(db, role: str = "operator") -> models.User:
    user = models.User(
        id=uuid.uuid4(),
        email=f"{role}-{uuid.uuid4()}@example.com",
        full_name=f"Test {role}",
        role=role,
    )
    db.add(user)
    db.commit()
    return user


def auth_headers(user: models.User) -> dict:
    token = create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}


def make_culture(db, *, cell_type: str = "MSC", passage: int = 0, status: str = "active") -> models.Culture:
    culture = models.Culture(
        id=uuid.uuid4(),
        culture_code=f"CLT-{uuid.uuid4().hex[:8].upper()}",
        cell_type=cell_type,
        current_passage=passage,
        status=status,
    )
    db.add(culture)
    db.commit()
    return culture


def make_container(db, culture: models.Culture, *, status: str = "active", index: int = 1, **fields) -> models.Container:
    container = models.Container(
        id=uuid.uuid4(),
        container_code=f"{culture.culture_code}-SEED-{index:02d}-{uuid.uuid4().hex[:4]}",
        culture_id=culture.id,
        passage_number=culture.current_passage,
        status=status,
        volume_ml=fields.pop("volume_ml", 15.0),
        **fields,
    )
    db.add(container)
    db.commit()
    return container


def three_step_payload(*, critical: bool = False, code: str | None = None, **overrides) -> schemas.TemplateCreate:
    """Observation, cell counting (viability >= 80) and passage."""

    steps = [
        {"step_number": 1, "step_name": "Visual check", "step_type": "observation"},
        {
            "step_number": 2,
            "step_name": "Cell count",
            "step_type": "cell_counting",
            "is_critical": critical,
            "cca_rules": [{"parameter": "viability_percent", "min": 80}],
        },
        {"step_number": 3, "step_name": "Split", "step_type": "passage"},
    ]
    data = {
        "template_code": code or f"TPL-{uuid.uuid4().hex[:6]}",
        "name": "Expansion",
        "steps": steps,
    }
    data.update(overrides)
    return schemas.TemplateCreate.model_validate(data)


def make_template(db, actor: models.User, payload: schemas.TemplateCreate | None = None) -> models.ProcessTemplate:
    template = processes.create_template(db, payload or three_step_payload(), actor)
    db.commit()
    return template
