import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, Field

from app.config import load_settings
from app.db.store import StorageError
from app.logging_config import configure_logging
from medreminder import DuplicateMedicationError, ReminderSetupError, build_assistant, build_flow
from shared.contracts.enums import RouteOutcome
from shared.contracts.models import (
    ChatReply,
    ComplianceRecord,
    Medication,
    MedicationCreate,
    ModalState,
    PendingConfirmation,
)

settings = load_settings()
configure_logging(level=settings.log_level, json_output=settings.log_json)
logger = logging.getLogger(__name__)

flow = build_flow(settings)
assistant = build_assistant(settings, flow.store)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    granted = await flow.initialize()
    logger.info("reminder service started", extra={"platform": settings.platform.value, "permission": granted})
    yield
    await flow.shutdown()


app = FastAPI(title="reminders", lifespan=lifespan)


class DeleteMedicationResult(BaseModel):
    medication_id: str
    cancelled_reminders: int


class ConfirmationResult(BaseModel):
    confirmation_id: str
    confirmed: bool


class RouteResult(BaseModel):
    outcome: RouteOutcome


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "platform": settings.platform.value}


@app.get("/medications", response_model=list[Medication])
async def list_medications() -> list[Medication]:
    return await flow.list_medications()


@app.post("/medications", response_model=Medication, status_code=201)
async def create_medication(payload: MedicationCreate) -> Medication:
    try:
        return await flow.save_medication(payload)
    except DuplicateMedicationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ReminderSetupError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.delete("/medications/{medication_id}", response_model=DeleteMedicationResult)
async def delete_medication(medication_id: str) -> DeleteMedicationResult:
    try:
        cancelled = await flow.delete_medication(medication_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="medication not found") from exc
    except StorageError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DeleteMedicationResult(medication_id=medication_id, cancelled_reminders=cancelled)


@app.get("/confirmations", response_model=list[PendingConfirmation])
async def list_confirmations() -> list[PendingConfirmation]:
    return await flow.pending_confirmations()


@app.post("/confirmations/{confirmation_id}/confirm", response_model=ConfirmationResult)
async def confirm_confirmation(confirmation_id: str) -> ConfirmationResult:
    confirmed = await flow.confirm_pending(confirmation_id)
    return ConfirmationResult(confirmation_id=confirmation_id, confirmed=confirmed)


@app.get("/compliance/{medication_id}", response_model=ComplianceRecord)
async def get_compliance(medication_id: str) -> ComplianceRecord:
    record = await flow.compliance_for(medication_id)
    if record is None:
        raise HTTPException(status_code=404, detail="no compliance record")
    return record


@app.post("/notifications/events", response_model=RouteResult)
async def notification_event(event: dict[str, Any] = Body(...)) -> RouteResult:
    return RouteResult(outcome=await flow.handle_event(event))


@app.get("/modal", response_model=ModalState)
def modal_state() -> ModalState:
    return flow.modal.state


@app.post("/modal/confirm")
async def confirm_modal() -> dict[str, bool]:
    return {"confirmed": await flow.modal.confirm()}


@app.post("/assistant/chat", response_model=ChatReply)
async def chat(payload: ChatRequest) -> ChatReply:
    medications = await flow.list_medications()
    return await assistant.chat(payload.message, medications)


@app.delete("/assistant/history")
async def clear_history() -> dict[str, bool]:
    return {"cleared": await assistant.clear_history()}
