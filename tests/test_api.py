import asyncio
import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "")
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi import BackgroundTasks, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import routers.association_rules as rules_router
from database import Base
from main import app
from services.association_rules_engine import is_analysis_running, release_run_slot
from services.storage import StorageService

HEADER = "InvoiceNo,StockCode,Description,Quantity,InvoiceDate,UnitPrice,CustomerID,Country\n"


def _csv():
    lines = []
    for i in range(3):
        invoice = f"53700{i}"
        lines.append(f"{invoice},85123A,WHITE HANGING HEART T-LIGHT HOLDER,6,12/1/2010 8:26,2.55,17850,United Kingdom")
        lines.append(f"{invoice},71053,WHITE METAL LANTERN,6,12/1/2010 8:26,3.39,17850,United Kingdom")
    lines.append("537009,22633,HAND WARMER UNION JACK,6,12/1/2010 8:28,1.85,17850,United Kingdom")
    lines.append("C537010,71053,WHITE METAL LANTERN,-1,12/1/2010 9:00,3.39,17850,United Kingdom")
    return HEADER + "\n".join(lines) + "\n"


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoints(client):
    assert client.get("/").json()["ok"] is True
    assert client.get("/healthz").json() == {"ok": True}
    health = client.get("/api/health").json()
    assert health["database"]["status"] == "healthy"


def test_unknown_order_by_is_rejected(client):
    response = client.get("/api/association-rules", params={"orderBy": "popularity"})
    assert response.status_code == 400
    assert "orderBy" in response.json()["error"]


def test_invalid_overrides_are_rejected(client):
    response = client.post("/api/generate-rules", json={"minLift": -1})
    assert response.status_code == 400
    response = client.post("/api/generate-rules", json={"minCooccurrence": -2})
    assert response.status_code == 400


def test_upload_rejects_non_csv(client):
    response = client.post("/api/upload-transactions", files={"file": ("data.txt", b"hello", "text/plain")})
    assert response.status_code == 400


def test_upload_rejects_missing_columns(client):
    response = client.post(
        "/api/upload-transactions",
        files={"file": ("data.csv", b"InvoiceNo,StockCode\n1,A\n", "text/csv")},
    )
    assert response.status_code == 400
    assert "missing required columns" in response.json()["error"]


def test_unknown_run_is_404(client):
    assert client.get("/api/analysis-runs/not-a-run").status_code == 404


def test_upload_generate_and_query(client):
    upload = client.post("/api/upload-transactions", files={"file": ("retail.csv", _csv().encode(), "text/csv")})
    assert upload.status_code == 200
    report = upload.json()["report"]
    assert report["rowsLoaded"] == 8
    assert report["validRows"] == 7

    started = client.post("/api/generate-rules", json={"minCooccurrence": 1})
    assert started.status_code == 200
    body = started.json()
    assert body["success"] is True
    run_id = body["analysisRunId"]

    run = client.get(f"/api/analysis-runs/{run_id}").json()
    assert run["status"] == "completed"
    assert run["totalOrders"] == 4
    assert run["pairsPublished"] == 1

    rules = client.get("/api/association-rules", params={"orderBy": "confidence"}).json()
    assert len(rules) == 1
    rule = rules[0]
    assert (rule["productA"], rule["productB"]) == ("71053", "85123A")
    assert rule["ordersWithBoth"] == 3
    assert rule["lift"] == pytest.approx(1.3333, abs=1e-4)
    assert rule["tier"] == "Weak"

    assert client.get("/api/association-rules/top").json() == []
    assert len(client.get("/api/association-rules/top", params={"minLift": 1.2}).json()) == 1

    cross_sell = client.get("/api/insights/cross-sell/71053", params={"minLift": 1.0}).json()
    assert cross_sell["recommendations"][0]["stockCode"] == "85123A"

    summary = client.get("/api/insights/summary").json()
    assert summary["totalOrdersAnalyzed"] == 4
    assert summary["avgBasketSize"] == 1.75

    assert client.get("/api/insights/bundles").json() == []


def test_second_generate_request_is_refused_before_first_run_starts(monkeypatch):
    async def scenario():
        db_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        async with db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        monkeypatch.setattr(rules_router, "storage", StorageService(async_sessionmaker(db_engine, expire_on_commit=False)))

        first_tasks, second_tasks = BackgroundTasks(), BackgroundTasks()
        try:
            first = await rules_router.generate_rules(rules_router.GenerateRulesRequest(), first_tasks)
            with pytest.raises(HTTPException) as rejected:
                await rules_router.generate_rules(rules_router.GenerateRulesRequest(), second_tasks)
            return first, rejected.value, len(first_tasks.tasks), len(second_tasks.tasks)
        finally:
            release_run_slot()
            await db_engine.dispose()

    first, rejected, first_count, second_count = asyncio.run(scenario())
    assert first["success"] is True
    assert rejected.status_code == 409
    assert (first_count, second_count) == (1, 0)
    assert not is_analysis_running()
