"""
Infraestructura común de backfills.

Un backfill recorre documentos por páginas (cursor `_id > $cursor` ordenado
por `_id`), calcula para cada documento un BackfillChange y lo escribe en una
transacción por página. Los errores de un documento se acumulan y el loop
continúa; después de cada página se guarda un checkpoint para poder reanudar.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.core.logging_config import LogContext, log_backfill_operation
from app.db.sanity_client import Patch, SanityClient, Transaction, get_sanity_client
from app.db.stripe_client import StripeGateway, get_stripe_gateway
from app.services.backfills.checkpoint import BackfillCheckpointManager
from app.utils.error_handler import AppException, BackfillException, ErrorAggregator, ValidationException, error_message
from app.utils.id_utils import stable_stringify, to_bool, to_int, to_str

logger = logging.getLogger(__name__)

MISSING = object()
UNRESOLVED = object()


def resolve_path(document: Dict[str, Any], path: str) -> Any:
    """
    Valor de un path de Sanity (`a.b.c`) en un documento.

    Returns:
        Any: El valor, MISSING si algún segmento no existe o UNRESOLVED si
        el path usa selectores de arrays (`items[0]`)
    """
    if "[" in path:
        return UNRESOLVED
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return MISSING
        value = value[part]
    return value


def _is_noop_set(document: Dict[str, Any], name: str, value: Any) -> bool:
    current = resolve_path(document, name)
    if current is MISSING or current is UNRESOLVED:
        return False
    return stable_stringify(current) == stable_stringify(value)


def _is_noop_unset(document: Dict[str, Any], path: str) -> bool:
    current = resolve_path(document, path)
    return current is MISSING or current is None


@dataclass
class BackfillChange:
    """
    Cambios calculados para un documento.

    Cada campo puede asociarse a un contador del job; los contadores de los
    campos que resultan no-op se descartan en without_noops().
    """

    set: Dict[str, Any] = field(default_factory=dict)
    unset: List[str] = field(default_factory=list)
    field_counters: Dict[str, str] = field(default_factory=dict)
    extra_counters: List[str] = field(default_factory=list)

    def set_field(self, name: str, value: Any, counter: Optional[str] = None) -> "BackfillChange":
        self.set[name] = value
        if counter:
            self.field_counters[name] = counter
        return self

    def unset_field(self, path: str, counter: Optional[str] = None) -> "BackfillChange":
        if path not in self.unset:
            self.unset.append(path)
        if counter:
            self.field_counters[path] = counter
        return self

    def count(self, counter: str) -> "BackfillChange":
        """Suma un contador que no depende de un campo concreto."""
        self.extra_counters.append(counter)
        return self

    def is_empty(self) -> bool:
        return not self.set and not self.unset

    @property
    def counters(self) -> List[str]:
        names = [self.field_counters[name] for name in [*self.set, *self.unset] if name in self.field_counters]
        return list(dict.fromkeys([*names, *self.extra_counters]))

    def without_noops(self, document: Dict[str, Any]) -> "BackfillChange":
        """
        Quita los set cuyo valor ya está en el documento y los unset de
        campos que no existen. Los paths con puntos se resuelven en objetos
        anidados; los que tienen selectores de arrays se conservan siempre.
        """
        kept_set = {name: value for name, value in self.set.items() if not _is_noop_set(document, name, value)}
        kept_unset = [path for path in self.unset if not _is_noop_unset(document, path)]
        kept_fields = set(kept_set) | set(kept_unset)
        return BackfillChange(
            set=kept_set,
            unset=kept_unset,
            field_counters={name: counter for name, counter in self.field_counters.items() if name in kept_fields},
            extra_counters=list(self.extra_counters) if kept_fields else [],
        )

    def to_patch(self, document_id: str) -> Patch:
        return Patch(document_id).set(dict(self.set)).unset(list(self.unset))


# === OPCIONES ===


def option_str(options: Dict[str, Any], name: str) -> Optional[str]:
    return to_str(options.get(name))


def option_int(options: Dict[str, Any], name: str, default: Optional[int] = None, maximum: Optional[int] = None) -> Optional[int]:
    """
    Lee una opción entera positiva.

    Raises:
        ValidationException: Si el valor no es un entero positivo
    """
    raw = options.get(name)
    if raw is None or raw == "":
        return default
    value = to_int(raw)
    if value is None or value <= 0:
        raise ValidationException(f"Invalid {name}: {raw}", field=name, invalid_value=raw, status_code=400)
    return min(value, maximum) if maximum else value


def option_bool(options: Dict[str, Any], name: str, default: bool = False) -> bool:
    value = to_bool(options.get(name))
    return default if value is None else value


def option_choice(options: Dict[str, Any], name: str, choices: Tuple[str, ...], default: Optional[str] = None) -> Optional[str]:
    """
    Raises:
        ValidationException: Si el valor no está entre las opciones válidas
    """
    value = option_str(options, name) or default
    if value is not None and value not in choices:
        raise ValidationException(
            f"Invalid {name}: {value} (expected one of {', '.join(choices)})",
            field=name,
            invalid_value=value,
            status_code=400,
        )
    return value


# === JOBS ===


class BackfillJob:
    """
    Job de backfill con paginación por cursor.

    Las subclases implementan fetch_page() y process_page(); run() se encarga
    del límite, los checkpoints, el logging y el resultado.
    """

    name: str = ""
    description: str = ""
    page_size: int = 100
    counters: Tuple[str, ...] = ()

    def __init__(self, sanity: Optional[SanityClient] = None, gateway: Optional[StripeGateway] = None):
        self._sanity = sanity
        self._gateway = gateway
        self.error_aggregator = ErrorAggregator()

    @property
    def sanity(self) -> SanityClient:
        if self._sanity is None:
            self._sanity = get_sanity_client()
        return self._sanity

    @property
    def gateway(self) -> StripeGateway:
        if self._gateway is None:
            self._gateway = get_stripe_gateway()
        return self._gateway

    def parse_options(self, options: Dict[str, Any]) -> Dict[str, Any]:
        """Valida y normaliza las opciones del run."""
        return dict(options)

    def initial_stats(self) -> Dict[str, int]:
        return {"total": 0, "changed": 0, "failed": 0, **{name: 0 for name in self.counters}}

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        """
        Obtiene una página.

        Returns:
            Tuple: (documentos, cursor siguiente, hay más páginas)
        """
        raise NotImplementedError

    async def process_page(
        self, documents: List[Dict[str, Any]], dry_run: bool, stats: Dict[str, int], options: Dict[str, Any]
    ) -> None:
        raise NotImplementedError

    async def finalize(self, stats: Dict[str, Any], dry_run: bool, options: Dict[str, Any]) -> None:
        """Hook al terminar el run (contadores finales, reportes)."""

    def record_failure(self, document: Dict[str, Any], exception: Exception, stats: Dict[str, int]) -> None:
        """Registra el fallo de un documento y sigue con el resto."""
        document_id = document.get("_id") or document.get("id")
        stats["failed"] += 1
        self.error_aggregator.add_error(exception, {"document_id": document_id, "job": self.name})
        logger.warning(f"⚠️ Backfill {self.name}: {document_id} failed: {error_message(exception)}")

    async def run(
        self, dry_run: bool = True, limit: Optional[int] = None, resume: bool = False, **options
    ) -> Dict[str, Any]:
        """
        Ejecuta el backfill.

        Args:
            dry_run: Calcular y reportar cambios sin escribir
            limit: Máximo de documentos a procesar en este run
            resume: Continuar desde el último checkpoint
            **options: Opciones propias del job

        Returns:
            Dict: ok, job, dryRun, contadores, pages y errores por documento

        Raises:
            ValidationException: Opciones inválidas
            BackfillException: Si falla la lectura de una página
        """
        options = self.parse_options(options)
        if limit is not None and limit <= 0:
            raise ValidationException(f"Invalid limit: {limit}", field="limit", invalid_value=limit, status_code=400)

        self.error_aggregator = ErrorAggregator()
        stats: Dict[str, Any] = self.initial_stats()
        run_options = {"dryRun": dry_run, **{key: value for key, value in options.items() if value is not None}}
        cursor: Optional[str] = None
        page = 0

        checkpoints = BackfillCheckpointManager(self.name)
        await checkpoints.initialize()
        if resume:
            checkpoint = await checkpoints.load_checkpoint()
            if checkpoint and checkpoint.get("options") == run_options:
                cursor = checkpoint.get("cursor")
                page = int(checkpoint.get("page_number") or 0)
                stats.update(checkpoint.get("stats") or {})
            elif checkpoint:
                logger.warning(f"⚠️ Checkpoint for {self.name} was saved with other options, starting fresh")

        processed_before = stats["total"]
        completed = True
        log_backfill_operation(self.name, "start", dry_run, limit=limit, resume_cursor=cursor)

        with LogContext(backfill_job=self.name, dry_run=dry_run):
            while True:
                remaining = limit - (stats["total"] - processed_before) if limit else None
                if remaining is not None and remaining <= 0:
                    completed = False
                    break
                page_limit = min(self.page_size, remaining) if remaining is not None else self.page_size

                try:
                    documents, next_cursor, has_more = await self.fetch_page(cursor, page_limit, options)
                except AppException as e:
                    log_backfill_operation(self.name, "failed", dry_run, page=page + 1, error=e.message)
                    raise BackfillException(
                        f"Backfill {self.name} failed fetching page {page + 1}: {e.message}",
                        job=self.name,
                        operation="fetch_page",
                        backfill_stats=dict(stats),
                    ) from e

                if documents:
                    await self.process_page(documents, dry_run, stats, options)
                    page += 1
                cursor = next_cursor
                await checkpoints.save_checkpoint(cursor, stats["total"], dict(stats), page, run_options)

                if not has_more:
                    break

        if completed:
            await checkpoints.delete_checkpoint()
        await self.finalize(stats, dry_run, options)

        result: Dict[str, Any] = {"ok": True, "job": self.name, "dryRun": dry_run, **stats, "pages": page}
        if not completed:
            result["cursor"] = cursor
        errors = self.error_aggregator.get_error_messages()
        if errors:
            result["errors"] = errors

        log_backfill_operation(self.name, "complete", dry_run, **stats)
        mode = "would change" if dry_run else "changed"
        logger.info(f"✅ Backfill {self.name}: {stats['changed']} of {stats['total']} documents {mode}")
        return result


class DocumentBackfillJob(BackfillJob):
    """
    Backfill sobre documentos de Sanity.

    Por defecto cada documento pasa por transform() (puro) y el cambio se
    escribe en la transacción de la página. Los jobs que necesitan llamar a
    otros servicios sobrescriben process_document().
    """

    document_filter: str = '_type == "order"'
    projection: str = "{_id}"

    def build_filter(self, options: Dict[str, Any]) -> str:
        return self.document_filter

    def query_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def fetch_page(
        self, cursor: Optional[str], limit: int, options: Dict[str, Any]
    ) -> Tuple[List[Dict[str, Any]], Optional[str], bool]:
        query = f"*[{self.build_filter(options)} && _id > $cursor] | order(_id)[0...$limit]{self.projection}"
        documents = await self.sanity.fetch(query, {"cursor": cursor or "", "limit": limit, **self.query_params(options)})
        documents = documents or []
        next_cursor = documents[-1]["_id"] if documents else cursor
        return documents, next_cursor, len(documents) == limit

    async def prepare_page(self, documents: List[Dict[str, Any]], options: Dict[str, Any]) -> None:
        """Hook para cargar datos auxiliares de la página (productos, órdenes)."""

    def transform(self, document: Dict[str, Any]) -> Optional[BackfillChange]:
        raise NotImplementedError

    async def plan(self, document: Dict[str, Any], options: Dict[str, Any]) -> Optional[BackfillChange]:
        return self.transform(document)

    def apply_change(
        self,
        document: Dict[str, Any],
        change: Optional[BackfillChange],
        dry_run: bool,
        stats: Dict[str, int],
        transaction: Optional[Transaction],
    ) -> bool:
        """Cuenta el cambio y lo agrega a la transacción. Devuelve si hubo cambio."""
        if change is None:
            return False
        change = change.without_noops(document)
        if change.is_empty():
            return False
        stats["changed"] += 1
        for counter in change.counters:
            stats[counter] = stats.get(counter, 0) + 1
        if not dry_run and transaction is not None:
            transaction.patch(change.to_patch(document["_id"]))
        return True

    async def process_document(
        self,
        document: Dict[str, Any],
        dry_run: bool,
        stats: Dict[str, int],
        transaction: Transaction,
        options: Dict[str, Any],
    ) -> None:
        change = await self.plan(document, options)
        self.apply_change(document, change, dry_run, stats, transaction)

    async def process_page(
        self, documents: List[Dict[str, Any]], dry_run: bool, stats: Dict[str, int], options: Dict[str, Any]
    ) -> None:
        await self.prepare_page(documents, options)
        transaction = self.sanity.transaction()
        # Documento con mutaciones pendientes y lo que sumó a cada contador
        pending: List[Tuple[Dict[str, Any], Dict[str, int]]] = []

        for document in documents:
            stats["total"] += 1
            self.error_aggregator.increment_processed()
            before = len(transaction)
            counted = dict(stats)
            try:
                await self.process_document(document, dry_run, stats, transaction, options)
            except Exception as e:
                self.record_failure(document, e, stats)
                continue
            if len(transaction) > before:
                increments = {
                    name: stats[name] - counted.get(name, 0)
                    for name in stats
                    if name != "failed" and stats[name] != counted.get(name, 0)
                }
                pending.append((document, increments))

        if dry_run or not len(transaction):
            return
        try:
            await transaction.commit()
        except Exception as e:
            # La transacción es atómica: ningún documento de la página se escribió
            for document, increments in pending:
                for name, amount in increments.items():
                    stats[name] -= amount
                failure = BackfillException(f"Transaction commit failed: {error_message(e)}", job=self.name, operation="commit")
                self.record_failure(document, failure, stats)
