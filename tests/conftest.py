import time
from dataclasses import dataclass
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chartdeck.api.dependencies import build_services
from chartdeck.database import Base, get_db
from chartdeck.models import Workspace, WorkspaceMember
from chartdeck.security import create_access_token
from chartdeck.settings import Settings
from main import create_app

ADMIN_ID = 1
VIEWER_ID = 2
OUTSIDER_ID = 3
EDITOR_ID = 4

ORDERS = [
    {"region": "SP", "status": "active", "revenue": 100},
    {"region": "SP", "status": "inactive", "revenue": 999},
    {"region": "RJ", "status": "active", "revenue": 50},
    {"region": "MG", "status": "active", "revenue": 25},
]


@dataclass
class ApiContext:
    client: TestClient
    settings: Settings
    session_factory: sessionmaker

    def headers(self, user_id: int = ADMIN_ID, workspace_id: int = 1) -> dict[str, str]:
        token = create_access_token({"sub": user_id}, self.settings)
        return {"Authorization": f"Bearer {token}", "X-Workspace-Id": str(workspace_id)}

    def wait_for_job(self, job_id: str, **header_options) -> dict:
        for _ in range(100):
            response = self.client.get(f"/jobs/{job_id}", headers=self.headers(**header_options))
            assert response.status_code == 200
            job = response.json()["data"]
            if job["status"] in {"completed", "failed"}:
                return job
            time.sleep(0.02)
        raise AssertionError(f"job {job_id} did not finish")


def _seed_workspaces(session_factory: sessionmaker) -> None:
    db = session_factory()
    db.add_all(
        [
            Workspace(id=1, name="Acme", slug="acme"),
            Workspace(id=2, name="Other", slug="other"),
        ]
    )
    db.add_all(
        [
            WorkspaceMember(workspace_id=1, user_id=ADMIN_ID, role="admin"),
            WorkspaceMember(workspace_id=1, user_id=VIEWER_ID, role="viewer"),
            WorkspaceMember(workspace_id=1, user_id=EDITOR_ID, role="editor"),
            WorkspaceMember(workspace_id=2, user_id=OUTSIDER_ID, role="admin"),
        ]
    )
    db.commit()
    db.close()


@pytest.fixture
def api(tmp_path: Path):
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    _seed_workspaces(TestingSessionLocal)

    settings = Settings(environment="test", export_dir=str(tmp_path / "exports"))
    app = create_app(build_services(settings))

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield ApiContext(client=client, settings=settings, session_factory=TestingSessionLocal)
    engine.dispose()


def create_orders_dataset(context: ApiContext, *, declare_schema: bool = True) -> int:
    datasource = context.client.post(
        "/datasources",
        json={"name": "Inline orders", "connection_type": "inline"},
        headers=context.headers(),
    )
    assert datasource.status_code == 201
    schema = {"fields": [{"name": "region"}, {"name": "status"}, {"name": "revenue"}]} if declare_schema else {}
    dataset = context.client.post(
        "/datasets",
        json={
            "datasource_id": datasource.json()["data"]["id"],
            "name": "orders",
            "query_config": {"rows": ORDERS},
            "schema_config": schema,
        },
        headers=context.headers(),
    )
    assert dataset.status_code == 201
    return dataset.json()["data"]["id"]


def create_broken_dataset(context: ApiContext) -> int:
    datasource = context.client.post(
        "/datasources",
        json={"name": "Empty inline", "connection_type": "inline", "connection_config": {"tables": {}}},
        headers=context.headers(),
    )
    dataset = context.client.post(
        "/datasets",
        json={"datasource_id": datasource.json()["data"]["id"], "name": "missing", "query_config": {"table": "missing"}},
        headers=context.headers(),
    )
    assert dataset.status_code == 201
    return dataset.json()["data"]["id"]
