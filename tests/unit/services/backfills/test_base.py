"""Tests unitarios para la infraestructura de backfills."""

from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.db.sanity_client import SanityClient
from app.services.backfills import BACKFILL_JOBS, get_backfill_job, list_backfill_jobs
from app.services.backfills.base import BackfillChange, DocumentBackfillJob, option_choice, option_int
from app.utils.error_handler import BackfillException, CMSAPIException, NotFoundException, ValidationException


class StatusBackfill(DocumentBackfillJob):
    """Job mínimo: fija status = "ok" en cada documento."""

    name = "status-test"
    page_size = 2
    counters = ("statusFixed",)

    def transform(self, document: Dict[str, Any]) -> BackfillChange:
        if document.get("_id") == "doc-bad":
            raise ValueError("broken document")
        return BackfillChange().set_field("status", "ok", "statusFixed")


class FakeDataset:
    """Dataset en memoria que responde a la query paginada por _id."""

    def __init__(self, documents):
        self.documents = {document["_id"]: dict(document) for document in documents}

    async def fetch(self, query, params=None):
        ordered = sorted(self.documents)
        page = [self.documents[_id] for _id in ordered if _id > params["cursor"]][: params["limit"]]
        return [dict(document) for document in page]

    async def mutate(self, mutations, auto_generate_array_keys=True):
        for mutation in mutations:
            patch_data = mutation["patch"]
            self.documents[patch_data["id"]].update(patch_data.get("set", {}))
        return {"transactionId": "tx", "results": []}


def _sanity(dataset: FakeDataset):
    sanity = SanityClient(project_id="proj", dataset="production", token="token")
    sanity.fetch = AsyncMock(side_effect=dataset.fetch)
    sanity.mutate = AsyncMock(side_effect=dataset.mutate)
    return sanity


def _checkpoints(saved=None):
    manager = MagicMock()
    manager.initialize = AsyncMock()
    manager.load_checkpoint = AsyncMock(return_value=saved)
    manager.save_checkpoint = AsyncMock()
    manager.delete_checkpoint = AsyncMock()
    return manager


class TestBackfillChange:
    """Tests para BackfillChange."""

    def test_without_noops(self):
        """Descarta los set que no cambian nada y los unset de campos ausentes."""
        change = (
            BackfillChange()
            .set_field("a", {"x": 1, "y": 2}, "aFixed")
            .set_field("b", 2, "bFixed")
            .unset_field("c", "cRemoved")
            .unset_field("d")
        )

        kept = change.without_noops({"a": {"y": 2, "x": 1}, "b": 1, "d": "legacy"})

        assert kept.set == {"b": 2}
        assert kept.unset == ["d"]
        assert kept.counters == ["bFixed"]

    def test_without_noops_resolves_nested_paths(self):
        """Los unset y set con puntos se comparan contra el objeto anidado."""
        change = (
            BackfillChange()
            .unset_field("shippingAddress.legacyPhone", "phoneRemoved")
            .unset_field("billingAddress.legacyPhone")
            .set_field("shippingAddress.country", "US")
            .set_field("shippingAddress.state", "TX")
            .unset_field("cart[0].legacy")
        )

        kept = change.without_noops(
            {"shippingAddress": {"legacyPhone": "555-0100", "country": "US", "state": "CA"}, "billingAddress": "n/a"}
        )

        assert kept.unset == ["shippingAddress.legacyPhone", "cart[0].legacy"]
        assert kept.set == {"shippingAddress.state": "TX"}
        assert kept.counters == ["phoneRemoved"]

    def test_extra_counters_dropped_when_empty(self):
        change = BackfillChange().set_field("a", 1).count("legacyConverted")

        assert change.without_noops({"a": 1}).counters == []
        assert change.without_noops({}).counters == ["legacyConverted"]

    def test_to_patch(self):
        patch_data = BackfillChange().set_field("a", 1).unset_field("b").to_patch("doc-1").to_mutations()

        assert patch_data == [{"patch": {"id": "doc-1", "set": {"a": 1}, "unset": ["b"]}}]


class TestOptions:
    """Tests para los parsers de opciones."""

    def test_option_int(self):
        assert option_int({"pageSize": "900"}, "pageSize", default=77, maximum=500) == 500
        assert option_int({}, "pageSize", default=77) == 77
        with pytest.raises(ValidationException):
            option_int({"pageSize": "-1"}, "pageSize")

    def test_option_choice(self):
        assert option_choice({"kind": "charge"}, "kind", ("checkout", "charge")) == "charge"
        with pytest.raises(ValidationException) as exc_info:
            option_choice({"kind": "refund"}, "kind", ("checkout", "charge"))
        assert exc_info.value.status_code == 400


class TestBackfillRun:
    """Tests para BackfillJob.run."""

    def _documents(self):
        return [{"_id": f"doc-{index}", "status": "new"} for index in range(1, 6)]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self):
        """En dry-run se cuentan los cambios sin escribir."""
        dataset = FakeDataset(self._documents())
        sanity = _sanity(dataset)
        job = StatusBackfill(sanity=sanity)

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            result = await job.run(dry_run=True)

        assert result["ok"] is True
        assert result["dryRun"] is True
        assert result["total"] == 5
        assert result["changed"] == 5
        assert result["statusFixed"] == 5
        assert result["pages"] == 3
        assert "cursor" not in result
        sanity.mutate.assert_not_called()

    @pytest.mark.asyncio
    async def test_apply_then_rerun_is_noop(self):
        """Aplicar dos veces no produce cambios la segunda vez."""
        dataset = FakeDataset(self._documents())
        sanity = _sanity(dataset)

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            first = await StatusBackfill(sanity=sanity).run(dry_run=False)
            second = await StatusBackfill(sanity=sanity).run(dry_run=False)

        assert first["changed"] == 5
        assert all(document["status"] == "ok" for document in dataset.documents.values())
        assert second["changed"] == 0
        assert second["total"] == 5

    @pytest.mark.asyncio
    async def test_limit_returns_cursor(self):
        """Con límite se devuelve el cursor para continuar."""
        dataset = FakeDataset(self._documents())
        checkpoints = _checkpoints()

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=checkpoints):
            result = await StatusBackfill(sanity=_sanity(dataset)).run(dry_run=True, limit=3)

        assert result["total"] == 3
        assert result["cursor"] == "doc-3"
        checkpoints.delete_checkpoint.assert_not_called()

    @pytest.mark.asyncio
    async def test_resume_from_checkpoint(self):
        dataset = FakeDataset(self._documents())
        saved = {
            "cursor": "doc-3",
            "page_number": 2,
            "stats": {"total": 3, "changed": 3, "failed": 0, "statusFixed": 3},
            "options": {"dryRun": True},
        }

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints(saved)):
            result = await StatusBackfill(sanity=_sanity(dataset)).run(dry_run=True, resume=True)

        assert result["total"] == 5
        assert result["pages"] == 3

    @pytest.mark.asyncio
    async def test_resume_with_other_options_starts_fresh(self):
        dataset = FakeDataset(self._documents())
        saved = {"cursor": "doc-3", "page_number": 2, "stats": {"total": 3}, "options": {"dryRun": False}}

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints(saved)):
            result = await StatusBackfill(sanity=_sanity(dataset)).run(dry_run=True, resume=True)

        assert result["total"] == 5
        assert result["pages"] == 3

    @pytest.mark.asyncio
    async def test_document_failure_does_not_stop_run(self):
        """Un documento con error se reporta y el resto se procesa."""
        dataset = FakeDataset([{"_id": "doc-a"}, {"_id": "doc-bad"}, {"_id": "doc-c"}])

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            result = await StatusBackfill(sanity=_sanity(dataset)).run(dry_run=False)

        assert result["failed"] == 1
        assert result["changed"] == 2
        assert len(result["errors"]) == 1
        assert dataset.documents["doc-c"]["status"] == "ok"

    @pytest.mark.asyncio
    async def test_failed_commit_fails_page(self):
        """Si la transacción falla, todos los documentos de la página cuentan como fallidos."""
        dataset = FakeDataset(self._documents()[:2])
        sanity = _sanity(dataset)
        sanity.mutate = AsyncMock(side_effect=CMSAPIException("HTTP 409: conflict", api_response_code=409))

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            result = await StatusBackfill(sanity=sanity).run(dry_run=False)

        assert result["failed"] == 2
        assert result["changed"] == 0

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_field_counters(self):
        """Un error cualquiera al escribir revierte también los contadores por campo."""
        dataset = FakeDataset(self._documents()[:2] + [{"_id": "doc-3", "status": "ok"}])
        sanity = _sanity(dataset)
        sanity.mutate = AsyncMock(side_effect=ConnectionResetError("connection reset by peer"))

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            result = await StatusBackfill(sanity=sanity).run(dry_run=False)

        assert result["total"] == 3
        assert result["changed"] == 0
        assert result["statusFixed"] == 0
        assert result["failed"] == 2
        assert {error["id"] for error in result["errors"]} == {"doc-1", "doc-2"}
        assert all("connection reset by peer" in error["message"] for error in result["errors"])

    @pytest.mark.asyncio
    async def test_fetch_failure_raises_backfill_exception(self):
        sanity = SanityClient(project_id="proj", dataset="production", token="token")
        sanity.fetch = AsyncMock(side_effect=CMSAPIException("HTTP 500: down", api_response_code=500))

        with patch("app.services.backfills.base.BackfillCheckpointManager", return_value=_checkpoints()):
            with pytest.raises(BackfillException):
                await StatusBackfill(sanity=sanity).run(dry_run=True)

    @pytest.mark.asyncio
    async def test_invalid_limit(self):
        with pytest.raises(ValidationException):
            await StatusBackfill(sanity=MagicMock()).run(limit=0)


class TestRegistry:
    """Tests para el registro de jobs."""

    def test_all_jobs_registered(self):
        assert set(BACKFILL_JOBS) == {
            "orders",
            "order-details",
            "cart-item-fields",
            "clean-cart-items",
            "customers",
            "invoices",
            "repair-references",
            "order-stripe",
            "order-shipping",
            "refunds",
            "expired-checkouts",
            "checkout-async-payments",
            "payment-failures",
        }

    def test_unknown_job(self):
        with pytest.raises(NotFoundException):
            get_backfill_job("nope")

    def test_list_jobs(self):
        jobs = list_backfill_jobs()

        assert {"name", "description", "pageSize"} <= set(jobs[0])
        assert all(job["description"] for job in jobs)
