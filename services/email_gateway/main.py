import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from app.config import load_settings
from app.logging_config import configure_logging
from services.email_gateway.providers import EmailProvider, EmailProviderError, build_provider
from shared.contracts.models import EmailRequest

settings = load_settings()
configure_logging(level=settings.log_level, json_output=settings.log_json)
logger = logging.getLogger(__name__)

app = FastAPI(title="email_gateway")
DELIVERY_LOG: list[dict[str, Any]] = []
MAX_LOG_ENTRIES = 1000


def _append_log(entry: dict[str, Any]) -> None:
    DELIVERY_LOG.append(entry)
    if len(DELIVERY_LOG) > MAX_LOG_ENTRIES:
        del DELIVERY_LOG[0 : len(DELIVERY_LOG) - MAX_LOG_ENTRIES]


def get_provider() -> EmailProvider:
    return build_provider(settings)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "provider": settings.email_provider}


@app.post("/send-missed-dosage-email", response_model=None)
def send_missed_dosage_email(
    request: EmailRequest,
    provider: EmailProvider = Depends(get_provider),
) -> dict[str, Any] | JSONResponse:
    entry: dict[str, Any] = {
        "sent_at": datetime.now(timezone.utc).isoformat(),
        "provider": provider.name,
        "to": request.to,
        "subject": request.subject,
    }
    try:
        provider.send(request.to, request.subject, request.text)
    except EmailProviderError as exc:
        logger.error("email provider failed", extra={"provider": provider.name, "reason": str(exc)})
        _append_log({**entry, "success": False, "error": str(exc)})
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    _append_log({**entry, "success": True})
    return {"success": True}


@app.get("/logs")
def logs() -> list[dict[str, Any]]:
    return DELIVERY_LOG
