"""
Modelos Pydantic para los bodies de la API de operaciones.

Los campos obligatorios para el negocio se dejan opcionales en el schema:
los servicios validan y responden con el mensaje exacto que esperan los
clientes ("Missing email fields: ...", "Log drain requires name and url").
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Email


class EmailAttachment(BaseModel):
    """Adjunto en base64."""

    filename: str
    content: str
    contentType: Optional[str] = None


class CustomerEmailRequest(BaseModel):
    """Body de POST /email/customer."""

    to: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    template: Optional[str] = None
    attachments: List[EmailAttachment] = Field(default_factory=list)


# Log drains


class LogDrainCreate(BaseModel):
    """Body para crear un log drain."""

    name: Optional[str] = None
    provider: Optional[str] = None
    url: Optional[str] = None
    enabled: bool = True
    headers: Optional[Dict[str, str]] = None


class LogDrainUpdate(BaseModel):
    """Campos editables de un log drain; solo se aplican los enviados."""

    name: Optional[str] = None
    provider: Optional[str] = None
    url: Optional[str] = None
    enabled: Optional[bool] = None
    headers: Optional[Dict[str, str]] = None


class LogEvent(BaseModel):
    """Evento de log para reenviar a los drains."""

    model_config = ConfigDict(extra="allow")

    level: str = "info"
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FunctionLogRequest(BaseModel):
    """Body de POST /log-drains/function-log."""

    name: str
    status: str
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# Stripe


class StripeReprocessRequest(BaseModel):
    """Body de POST /stripe/reprocess."""

    id: Optional[str] = None
    autoFulfill: bool = False


# Backfills


class BackfillJobInfo(BaseModel):
    name: str
    description: str
    pageSize: int
