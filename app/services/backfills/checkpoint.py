"""
Sistema de checkpoints para backfills.

Guarda el cursor de paginación después de cada página procesada para que
un run interrumpido pueda reanudarse con --resume desde el último documento.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.core.redis_client import get_redis_client, is_redis_configured

logger = logging.getLogger(__name__)


class BackfillCheckpointManager:
    """
    Gestor de checkpoints de backfill.

    Guarda el progreso en Redis (con TTL) para recuperación rápida y
    en archivo local como respaldo.
    """

    def __init__(self, job_name: str, checkpoint_dir: Optional[str] = None, ttl_seconds: Optional[int] = None):
        """
        Inicializa el gestor de checkpoints.

        Args:
            job_name: Nombre del backfill (una ejecución activa por job)
            checkpoint_dir: Directorio de archivos de respaldo
            ttl_seconds: TTL del checkpoint en Redis y antigüedad máxima para reanudar
        """
        settings = get_settings()
        self.job_name = job_name
        self.checkpoint_dir = Path(checkpoint_dir or settings.BACKFILL_CHECKPOINT_DIR)
        self.checkpoint_file = self.checkpoint_dir / f"backfill-{job_name}.json"
        self.redis_key = f"backfill:checkpoint:{job_name}"
        self.ttl_seconds = ttl_seconds or settings.BACKFILL_CHECKPOINT_TTL
        self.redis_client = None

    async def initialize(self):
        """Prepara el directorio y la conexión con Redis si está disponible."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

        if not is_redis_configured():
            logger.debug(f"📁 Checkpoints for {self.job_name} use file backup only")
            return

        try:
            client = get_redis_client()
            await client.ping()
            self.redis_client = client
            logger.debug(f"📡 Checkpoints for {self.job_name} stored in Redis")
        except (RedisError, OSError) as e:
            logger.warning(f"⚠️ Redis not available, using file-based checkpoints only: {e}")
            self.redis_client = None

    async def save_checkpoint(
        self,
        cursor: Optional[str],
        processed_count: int,
        stats: Dict[str, Any],
        page_number: int = 0,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Guarda un checkpoint del progreso actual.

        Args:
            cursor: Último _id procesado (cursor de paginación)
            processed_count: Documentos procesados hasta ahora
            stats: Contadores parciales del job
            page_number: Número de página
            options: Opciones del run (para detectar reanudaciones incompatibles)

        Returns:
            Dict: Datos guardados
        """
        checkpoint_data = {
            "job": self.job_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cursor": cursor,
            "processed_count": processed_count,
            "page_number": page_number,
            "stats": stats,
            "options": options or {},
        }
        payload = json.dumps(checkpoint_data, default=str)

        if self.redis_client:
            try:
                await self.redis_client.setex(self.redis_key, self.ttl_seconds, payload)
            except (RedisError, OSError) as e:
                logger.warning(f"⚠️ Could not save checkpoint to Redis: {e}")

        # Siempre guardar en archivo como respaldo
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.checkpoint_file, "w", encoding="utf-8") as checkpoint_file:
            await checkpoint_file.write(payload)

        logger.debug(f"💾 Checkpoint saved for {self.job_name}: page {page_number}, cursor {cursor}")
        return checkpoint_data

    async def load_checkpoint(self) -> Optional[Dict[str, Any]]:
        """
        Carga el último checkpoint disponible y vigente.

        Returns:
            Datos del checkpoint o None si no existe o expiró
        """
        checkpoint = None

        if self.redis_client:
            try:
                data = await self.redis_client.get(self.redis_key)
                if data:
                    checkpoint = json.loads(data)
            except (RedisError, OSError) as e:
                logger.debug(f"Could not load checkpoint from Redis: {e}")

        if checkpoint is None and self.checkpoint_file.exists():
            try:
                async with aiofiles.open(self.checkpoint_file, "r", encoding="utf-8") as checkpoint_file:
                    checkpoint = json.loads(await checkpoint_file.read())
            except (OSError, ValueError) as e:
                logger.warning(f"⚠️ Ignoring unreadable checkpoint file {self.checkpoint_file}: {e}")
                return None

        if not checkpoint:
            logger.debug(f"ℹ️ No checkpoint found for {self.job_name}, starting fresh")
            return None

        if self._is_expired(checkpoint):
            logger.warning(f"⚠️ Checkpoint for {self.job_name} is older than {self.ttl_seconds}s, ignoring")
            return None

        logger.info(
            f"📂 Resuming {self.job_name} from cursor {checkpoint.get('cursor')} "
            f"({checkpoint.get('processed_count', 0)} processed)"
        )
        return checkpoint

    def _is_expired(self, checkpoint: Dict[str, Any]) -> bool:
        try:
            saved_at = datetime.fromisoformat(str(checkpoint["timestamp"]).replace("Z", "+00:00"))
        except (KeyError, ValueError):
            return True
        age = (datetime.now(timezone.utc) - saved_at).total_seconds()
        return age > self.ttl_seconds

    async def delete_checkpoint(self) -> None:
        """Elimina el checkpoint al completar el backfill."""
        if self.redis_client:
            try:
                await self.redis_client.delete(self.redis_key)
            except (RedisError, OSError) as e:
                logger.warning(f"⚠️ Could not delete Redis checkpoint: {e}")

        if self.checkpoint_file.exists():
            self.checkpoint_file.unlink()

        logger.debug(f"Checkpoint deleted for {self.job_name}")
