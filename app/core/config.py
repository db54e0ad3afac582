"""
Configuración centralizada de la aplicación.

Este módulo maneja todas las variables de entorno y configuraciones
de la aplicación usando Pydantic Settings para validación automática.
Las credenciales de Sanity, Stripe, ShipEngine, Resend y Auth0 se
leen del entorno.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from app.version import VERSION


class Settings(BaseSettings):
    """
    Configuración de la aplicación usando Pydantic Settings.

    Todas las configuraciones se cargan desde variables de entorno
    con valores por defecto apropiados para desarrollo.
    """

    # === CONFIGURACIÓN BÁSICA DE LA APP ===
    APP_NAME: str = "Storefront Ops Backend"
    APP_VERSION: str = VERSION
    ENVIRONMENT: str = Field(default="development", env="ENV")
    DEBUG: bool = Field(default=True, env="DEBUG")

    # === CONFIGURACIÓN DEL SERVIDOR ===
    HOST: str = Field(default="0.0.0.0", env="HOST")
    PORT: int = Field(default=8080, env="PORT")
    WORKERS: int = Field(default=1, env="WORKERS")
    LOG_LEVEL: str = Field(default="INFO", env="LOG_LEVEL")

    # === CONFIGURACIÓN DE SEGURIDAD ===
    # Listas separadas por comas
    ALLOWED_HOSTS: Optional[str] = Field(default=None, env="ALLOWED_HOSTS")
    CORS_ALLOW: str = Field(default="http://localhost:8888,http://localhost:3333", env="CORS_ALLOW")

    # === CONFIGURACIÓN DE SANITY (CMS) ===
    SANITY_PROJECT_ID: Optional[str] = Field(default=None, env="SANITY_PROJECT_ID")
    SANITY_DATASET: str = Field(default="production", env="SANITY_DATASET")
    SANITY_API_TOKEN: Optional[str] = Field(default=None, env="SANITY_API_TOKEN")
    SANITY_API_VERSION: str = Field(default="2024-04-10", env="SANITY_API_VERSION")
    SANITY_TIMEOUT: int = Field(default=30, env="SANITY_TIMEOUT")

    # === CONFIGURACIÓN DE STRIPE ===
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None, env="STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None, env="STRIPE_WEBHOOK_SECRET")
    STRIPE_API_VERSION: str = Field(default="2024-06-20", env="STRIPE_API_VERSION")

    # === CONFIGURACIÓN DE SHIPENGINE ===
    SHIPENGINE_API_KEY: Optional[str] = Field(default=None, env="SHIPENGINE_API_KEY")
    SHIPENGINE_API_URL: str = Field(default="https://api.shipengine.com", env="SHIPENGINE_API_URL")
    SHIPENGINE_WEBHOOK_TOKEN: Optional[str] = Field(default=None, env="SHIPENGINE_WEBHOOK_TOKEN")
    SHIPENGINE_CARRIER_IDS: str = Field(default="se-2300833,se-2945844", env="SHIPENGINE_CARRIER_IDS")
    # Dirección de origen de los envíos
    SHIP_FROM_NAME: str = Field(default="Shipping Department", env="SHIP_FROM_NAME")
    SHIP_FROM_PHONE: Optional[str] = Field(default=None, env="SHIP_FROM_PHONE")
    SHIP_FROM_ADDRESS_LINE1: Optional[str] = Field(default=None, env="SHIP_FROM_ADDRESS_LINE1")
    SHIP_FROM_CITY: Optional[str] = Field(default=None, env="SHIP_FROM_CITY")
    SHIP_FROM_STATE: Optional[str] = Field(default=None, env="SHIP_FROM_STATE")
    SHIP_FROM_POSTAL_CODE: Optional[str] = Field(default=None, env="SHIP_FROM_POSTAL_CODE")
    SHIP_FROM_COUNTRY: str = Field(default="US", env="SHIP_FROM_COUNTRY")

    # === CONFIGURACIÓN DE EMAIL (RESEND) ===
    RESEND_API_KEY: Optional[str] = Field(default=None, env="RESEND_API_KEY")
    RESEND_FROM: str = Field(default="Orders <orders@updates.example.com>", env="RESEND_FROM")
    # Hosts a los que /email/click puede redirigir (los subdominios también valen)
    EMAIL_CLICK_ALLOWED_HOSTS: Optional[str] = Field(default=None, env="EMAIL_CLICK_ALLOWED_HOSTS")

    # === CONFIGURACIÓN DE IDENTIDAD (AUTH0) ===
    AUTH0_WEBHOOK_SECRET: Optional[str] = Field(default=None, env="AUTH0_WEBHOOK_SECRET")

    # === CONFIGURACIÓN DE BACKFILLS ===
    BACKFILL_SECRET: Optional[str] = Field(default=None, env="BACKFILL_SECRET")
    BACKFILL_ORDER_SHIPPING_CONCURRENCY: int = Field(default=4, env="BACKFILL_ORDER_SHIPPING_CONCURRENCY")
    BACKFILL_CHECKPOINT_DIR: str = Field(default="checkpoints", env="BACKFILL_CHECKPOINT_DIR")
    # TTL en segundos del checkpoint en Redis
    BACKFILL_CHECKPOINT_TTL: int = Field(default=86400, env="BACKFILL_CHECKPOINT_TTL")

    # === CONFIGURACIÓN DE LOG DRAINS ===
    LOG_DRAIN_TIMEOUT: float = Field(default=10.0, env="LOG_DRAIN_TIMEOUT")
    # Token del API de log drains; sin valor se usa BACKFILL_SECRET
    LOG_DRAIN_SECRET: Optional[str] = Field(default=None, env="LOG_DRAIN_SECRET")

    # === CONFIGURACIÓN DE REDIS ===
    REDIS_URL: Optional[str] = Field(default=None, env="REDIS_URL")
    REDIS_MAX_CONNECTIONS: int = Field(default=10, env="REDIS_MAX_CONNECTIONS")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, env="REDIS_SOCKET_TIMEOUT")

    # === CONFIGURACIÓN DE RATE LIMITING ===
    ENABLE_RATE_LIMITING: bool = Field(default=True, env="ENABLE_RATE_LIMITING")
    RATE_LIMIT_PER_MINUTE: int = Field(default=60, env="RATE_LIMIT_PER_MINUTE")

    # === CONFIGURACIÓN DE LOGGING ===
    LOG_FILE_PATH: Optional[str] = Field(default="logs/app.log", env="LOG_FILE_PATH")
    LOG_MAX_SIZE_MB: int = Field(default=10, env="LOG_MAX_SIZE_MB")
    LOG_BACKUP_COUNT: int = Field(default=5, env="LOG_BACKUP_COUNT")

    # === CONFIGURACIÓN DE MONITOREO ===
    HEALTH_CHECK_TIMEOUT: int = Field(default=5, env="HEALTH_CHECK_TIMEOUT")
    # Cache en segundos
    HEALTH_CHECK_CACHE_TTL: int = Field(default=60, env="HEALTH_CHECK_CACHE_TTL")
    SLOW_REQUEST_THRESHOLD: float = Field(default=5.0, env="SLOW_REQUEST_THRESHOLD")
    DISK_SPACE_THRESHOLD: int = Field(default=10, env="DISK_SPACE_THRESHOLD")  # Porcentaje
    MEMORY_USAGE_THRESHOLD: int = Field(default=90, env="MEMORY_USAGE_THRESHOLD")  # Porcentaje

    # === CONFIGURACIÓN DE DOCUMENTACIÓN ===
    ENABLE_DOCS: bool = Field(default=True, env="ENABLE_DOCS")

    # === CONFIGURACIÓN DE RETRIES ===
    MAX_RETRIES: int = Field(default=3, env="MAX_RETRIES")
    RETRY_DELAY_SECONDS: int = Field(default=1, env="RETRY_DELAY_SECONDS")
    RETRY_BACKOFF_FACTOR: float = Field(default=2.0, env="RETRY_BACKOFF_FACTOR")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "allow",  # Permitir valores extra para flexibilidad futura
    }

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Valida que el nivel de log sea válido."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {valid_levels}")
        return v.upper()

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Valida que el entorno sea válido."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"ENVIRONMENT debe ser uno de: {valid_envs}")
        return v.lower()

    @field_validator("PORT")
    @classmethod
    def validate_port(cls, v):
        """Valida que el puerto esté en rango válido."""
        if not 1 <= v <= 65535:
            raise ValueError("PORT debe estar entre 1 y 65535")
        return v

    @field_validator("BACKFILL_ORDER_SHIPPING_CONCURRENCY")
    @classmethod
    def validate_concurrency(cls, v):
        """La concurrencia mínima es 1."""
        return max(1, v)

    @property
    def is_production(self) -> bool:
        """Verifica si está en entorno de producción."""
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        """Verifica si está en entorno de desarrollo."""
        return self.ENVIRONMENT == "development"

    @property
    def allowed_hosts(self) -> List[str]:
        """Parsea ALLOWED_HOSTS como lista separada por comas."""
        return _split_csv(self.ALLOWED_HOSTS)

    @property
    def cors_origins(self) -> List[str]:
        """Orígenes CORS explícitos."""
        return _split_csv(self.CORS_ALLOW)

    @property
    def shipengine_carrier_ids(self) -> List[str]:
        """Carriers de ShipEngine por defecto."""
        return _split_csv(self.SHIPENGINE_CARRIER_IDS)

    @property
    def email_click_allowed_hosts(self) -> List[str]:
        """Hosts de destino permitidos para los clicks trackeados."""
        return [host.lower() for host in _split_csv(self.EMAIL_CLICK_ALLOWED_HOSTS)]

    @property
    def log_drain_secret(self) -> str:
        """Token del API de log drains (LOG_DRAIN_SECRET o BACKFILL_SECRET)."""
        return (self.LOG_DRAIN_SECRET or self.BACKFILL_SECRET or "").strip()

    @property
    def sanity_configured(self) -> bool:
        """Verifica si Sanity tiene proyecto y token."""
        return bool(self.SANITY_PROJECT_ID and self.SANITY_DATASET and self.SANITY_API_TOKEN)

    @property
    def stripe_configured(self) -> bool:
        """Verifica si Stripe tiene clave secreta."""
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def ship_from_address(self) -> dict:
        """Dirección de origen en formato ShipEngine."""
        return {
            "name": self.SHIP_FROM_NAME,
            "phone": self.SHIP_FROM_PHONE,
            "address_line1": self.SHIP_FROM_ADDRESS_LINE1,
            "city_locality": self.SHIP_FROM_CITY,
            "state_province": self.SHIP_FROM_STATE,
            "postal_code": self.SHIP_FROM_POSTAL_CODE,
            "country_code": self.SHIP_FROM_COUNTRY,
        }

    @property
    def redis_config(self) -> dict:
        """Genera configuración para Redis."""
        if not self.REDIS_URL:
            return {}

        return {
            "max_connections": self.REDIS_MAX_CONNECTIONS,
            "socket_timeout": self.REDIS_SOCKET_TIMEOUT,
            "decode_responses": True,
        }


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Obtiene instancia singleton de configuración.

    Usa LRU cache para evitar recrear la configuración
    múltiples veces durante la ejecución.

    Returns:
        Settings: Instancia de configuración
    """
    return Settings()


# Instancia global para uso directo
settings = get_settings()


def get_missing_credentials(settings: Optional[Settings] = None) -> List[str]:
    """
    Lista las credenciales de integraciones que faltan.

    Returns:
        List[str]: Nombres de variables sin valor
    """
    settings = settings or get_settings()
    credential_fields = [
        "SANITY_PROJECT_ID",
        "SANITY_API_TOKEN",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "SHIPENGINE_API_KEY",
        "RESEND_API_KEY",
    ]

    missing_fields = []
    for field in credential_fields:
        value = getattr(settings, field, None)
        if not value or (isinstance(value, str) and not value.strip()):
            missing_fields.append(field)
    return missing_fields


def validate_required_settings() -> bool:
    """
    Valida que todas las configuraciones requeridas estén presentes.

    En desarrollo solo se advierte; en producción faltar Sanity es fatal
    porque ningún handler puede operar sin el CMS.

    Returns:
        bool: True si todas las configuraciones están presentes

    Raises:
        ValueError: Si alguna configuración requerida falta en producción
    """
    settings = get_settings()
    missing_fields = get_missing_credentials(settings)

    if settings.is_production and not settings.sanity_configured:
        raise ValueError(f"Configuraciones requeridas faltantes: {missing_fields}")

    return not missing_fields


def get_environment_info() -> dict:
    """
    Obtiene información del entorno actual.

    Returns:
        dict: Información del entorno
    """
    settings = get_settings()

    return {
        "app_name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "debug": settings.DEBUG,
        "is_production": settings.is_production,
        "is_development": settings.is_development,
        "host": settings.HOST,
        "port": settings.PORT,
        "log_level": settings.LOG_LEVEL,
        "features": {
            "rate_limiting": settings.ENABLE_RATE_LIMITING,
            "docs": settings.ENABLE_DOCS,
            "redis": bool(settings.REDIS_URL),
            "sanity": settings.sanity_configured,
            "stripe": settings.stripe_configured,
            "shipengine": bool(settings.SHIPENGINE_API_KEY),
            "resend": bool(settings.RESEND_API_KEY),
            "auth0_webhook": bool(settings.AUTH0_WEBHOOK_SECRET),
            "backfill_secret": bool(settings.BACKFILL_SECRET),
            "log_drain_secret": bool(settings.log_drain_secret),
        },
    }
