"""
Backfills de mantenimiento de datos.

Cada job es idempotente, pagina por cursor y soporta dry-run. El registro
BACKFILL_JOBS expone los jobs por nombre para la API y el CLI.
"""

from typing import Any, Dict, List, Type

from app.services.backfills.base import BackfillChange, BackfillJob, DocumentBackfillJob
from app.services.backfills.customers import CustomersBackfill
from app.services.backfills.invoices import InvoicesBackfill
from app.services.backfills.orders import (
    CartItemFieldsBackfill,
    CleanCartItemsBackfill,
    OrderDetailsBackfill,
    OrdersBackfill,
)
from app.services.backfills.references import RepairReferencesBackfill
from app.services.backfills.stripe_jobs import (
    CheckoutAsyncPaymentsBackfill,
    ExpiredCheckoutsBackfill,
    OrderShippingBackfill,
    OrderStripeBackfill,
    PaymentFailuresBackfill,
    RefundsBackfill,
)
from app.utils.error_handler import NotFoundException

BACKFILL_JOBS: Dict[str, Type[BackfillJob]] = {
    job.name: job
    for job in (
        OrdersBackfill,
        OrderDetailsBackfill,
        CartItemFieldsBackfill,
        CleanCartItemsBackfill,
        CustomersBackfill,
        InvoicesBackfill,
        RepairReferencesBackfill,
        OrderStripeBackfill,
        OrderShippingBackfill,
        RefundsBackfill,
        ExpiredCheckoutsBackfill,
        CheckoutAsyncPaymentsBackfill,
        PaymentFailuresBackfill,
    )
}


def get_backfill_job(name: str, **kwargs) -> BackfillJob:
    """
    Crea una instancia del job con ese nombre.

    Raises:
        NotFoundException: Si no existe un job con ese nombre
    """
    job_class = BACKFILL_JOBS.get(name)
    if job_class is None:
        raise NotFoundException(f"Unknown backfill job: {name}", resource="backfill", resource_id=name)
    return job_class(**kwargs)


def list_backfill_jobs() -> List[Dict[str, Any]]:
    return [
        {"name": name, "description": job.description, "pageSize": job.page_size}
        for name, job in BACKFILL_JOBS.items()
    ]


__all__ = [
    "BACKFILL_JOBS",
    "BackfillChange",
    "BackfillJob",
    "DocumentBackfillJob",
    "get_backfill_job",
    "list_backfill_jobs",
]
