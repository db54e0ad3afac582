"""
Backfill de customers: userId desde los campos de identidad legacy y
defaults de opt-in.
"""

from typing import Any, Dict

from app.services.backfills.base import BackfillChange, DocumentBackfillJob
from app.utils.id_utils import now_iso, to_str

OPT_IN_FIELDS = ("emailOptIn", "marketingOptIn", "textOptIn")


def transform_customer(document: Dict[str, Any], timestamp: str = None) -> BackfillChange:
    """
    Calcula los cambios de un customer.

    updatedAt solo se estampa cuando hay otros cambios o falta.
    """
    change = BackfillChange()
    if not to_str(document.get("userId")):
        legacy_id = to_str(document.get("authId")) or to_str(document.get("auth0Id"))
        if legacy_id:
            change.set_field("userId", legacy_id, "userIdSet")

    for name in OPT_IN_FIELDS:
        if not isinstance(document.get(name), bool):
            change.set_field(name, False, "optInDefaults")

    if not change.is_empty() or not document.get("updatedAt"):
        change.set_field("updatedAt", timestamp or now_iso(), "updatedStamped")
    return change


class CustomersBackfill(DocumentBackfillJob):
    name = "customers"
    description = "Set customer userId from legacy identity fields and default opt-in flags"
    page_size = 200
    counters = ("userIdSet", "optInDefaults", "updatedStamped")
    document_filter = '_type == "customer"'
    projection = "{_id, userId, authId, auth0Id, updatedAt, emailOptIn, marketingOptIn, textOptIn}"

    def transform(self, document: Dict[str, Any]) -> BackfillChange:
        return transform_customer(document)
