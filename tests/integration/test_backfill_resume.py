"""
Test de integración: un backfill completo vía HTTP sobre un dataset en memoria.

Cubre el run interrumpido por limit, la reanudación desde el checkpoint en
archivo y la idempotencia de un segundo run.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.db.sanity_client import SanityClient
from app.main import app
from app.services.backfills import get_backfill_job
from app.services.backfills.checkpoint import BackfillCheckpointManager


class InMemoryDataset:
    """Órdenes en memoria con las queries paginadas y el count del job orders."""

    def __init__(self, documents):
        self.documents = {document["_id"]: dict(document) for document in documents}
        self.transactions = 0

    async def fetch(self, query, params=None):
        if query.startswith("count("):
            return sum(1 for document in self.documents.values() if "customer" in document)
        ordered = sorted(self.documents)
        page = [self.documents[_id] for _id in ordered if _id > params["cursor"]][: params["limit"]]
        return [dict(document) for document in page]

    async def mutate(self, mutations, auto_generate_array_keys=True):
        self.transactions += 1
        for mutation in mutations:
            patch_data = mutation["patch"]
            document = self.documents[patch_data["id"]]
            document.update(patch_data.get("set", {}))
            for path in patch_data.get("unset", []):
                document.pop(path, None)
        return {"transactionId": f"tx-{self.transactions}", "results": []}


@pytest.fixture
def dataset():
    return InMemoryDataset(
        [
            {"_id": "order-1", "_type": "order", "customer": {"_ref": "customer-1"}},
            {
                "_id": "order-2",
                "_type": "order",
                "customer": {"_ref": "customer-9"},
                "customerRef": {"_type": "reference", "_ref": "customer-2"},
            },
            {"_id": "order-3", "_type": "order", "customerRef": {"_type": "reference", "_ref": "customer-3"}},
        ]
    )


@pytest.fixture
def client(dataset, tmp_path):
    sanity = SanityClient(project_id="proj", dataset="production", token="token")
    sanity.fetch = AsyncMock(side_effect=dataset.fetch)
    sanity.mutate = AsyncMock(side_effect=dataset.mutate)
    settings = MagicMock()
    settings.BACKFILL_SECRET = ""

    with patch("app.api.v1.endpoints.backfills.get_settings", return_value=settings), patch(
        "app.api.v1.endpoints.backfills.get_backfill_job",
        side_effect=lambda name: get_backfill_job(name, sanity=sanity),
    ), patch(
        "app.services.backfills.base.BackfillCheckpointManager",
        side_effect=lambda name: BackfillCheckpointManager(name, checkpoint_dir=str(tmp_path), ttl_seconds=3600),
    ), patch("app.services.backfills.checkpoint.is_redis_configured", return_value=False):
        yield TestClient(app)


class TestOrdersBackfillFlow:
    """Run parcial, reanudación e idempotencia del backfill orders."""

    def test_dry_run_writes_nothing(self, client, dataset):
        response = client.post("/api/v1/backfills/orders?dryRun=true")

        assert response.status_code == 200
        assert response.json()["changed"] == 2
        assert dataset.transactions == 0
        assert "customer" in dataset.documents["order-1"]

    def test_limit_then_resume_then_rerun(self, client, dataset, tmp_path):
        first = client.post("/api/v1/backfills/orders", json={"limit": 2}).json()

        assert first["total"] == 2
        assert first["changed"] == 2
        assert first["cursor"] == "order-2"
        assert (tmp_path / "backfill-orders.json").exists()
        assert dataset.documents["order-1"]["customerRef"] == {"_type": "reference", "_ref": "customer-1"}
        assert dataset.documents["order-2"]["customerRef"]["_ref"] == "customer-2"

        resumed = client.post("/api/v1/backfills/orders", json={"resume": True}).json()

        assert resumed["total"] == 3
        assert resumed["changed"] == 2
        assert resumed["migratedCustomer"] == 1
        assert resumed["remainingCustomer"] == 0
        assert "cursor" not in resumed
        assert not (tmp_path / "backfill-orders.json").exists()

        rerun = client.post("/api/v1/backfills/orders").json()

        assert rerun["total"] == 3
        assert rerun["changed"] == 0
        assert dataset.transactions == 1
