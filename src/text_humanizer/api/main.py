import asyncio
import logging
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from text_humanizer.config import settings
from text_humanizer.db import delete_document, get_document, get_documents, init_db, save_document, update_document
from text_humanizer.humanizer_client import (
    HumanizerClient,
    HumanizerError,
    PollFailed,
    RederiveFailed,
    RequestRejected,
    SubmitFailed,
)
from text_humanizer.ledger import CreditLedger, InsufficientCredits, LedgerError, UnknownUser
from text_humanizer.orchestrator import (
    InvalidInputLength,
    Job,
    JobError,
    JobOrchestrator,
    NoPriorJob,
    ProcessingTimedOut,
)
from text_humanizer.schemas import (
    AdminGrantRequest,
    CreditBalanceResponse,
    DEFAULT_TITLE,
    DocumentCreateRequest,
    DocumentResponse,
    DocumentUpdateRequest,
    HumanizeRequest,
    JobResponse,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Text Humanizer", version=settings.app_version)
init_db()

ledger = CreditLedger()


def get_client() -> HumanizerClient:
    return HumanizerClient()


def get_orchestrator() -> JobOrchestrator:
    return JobOrchestrator(client=get_client(), ledger=ledger)


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


def _failure(exc: Exception) -> tuple[int, str]:
    if isinstance(exc, InvalidInputLength):
        return 400, "INVALID_INPUT_LENGTH"
    if isinstance(exc, InsufficientCredits):
        return 402, "INSUFFICIENT_CREDITS"
    if isinstance(exc, UnknownUser):
        return 404, "UNKNOWN_USER"
    if isinstance(exc, NoPriorJob):
        return 409, "NO_PRIOR_JOB"
    if isinstance(exc, ProcessingTimedOut):
        return 504, "PROCESSING_TIMEOUT"
    if isinstance(exc, RequestRejected):
        return 503, "SERVICE_QUOTA_EXHAUSTED"
    if isinstance(exc, SubmitFailed):
        return 502, "SUBMIT_FAILED"
    if isinstance(exc, RederiveFailed):
        return 502, "REHUMANIZE_FAILED"
    if isinstance(exc, PollFailed):
        return 502, "POLL_FAILED"
    return 502, "SERVICE_ERROR"


@app.exception_handler(JobError)
@app.exception_handler(LedgerError)
@app.exception_handler(HumanizerError)
async def job_failure_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, code = _failure(exc)
    logger.info("%s %s failed with %s: %s", request.method, request.url.path, code, exc)
    return JSONResponse(status_code=status_code, content=envelope({}, status="error", error={"code": code, "message": str(exc)}))


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _owned_document(doc_id: str, user_id: str) -> dict:
    doc = get_document(doc_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    if doc["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="You do not own this document")
    return doc


def _job_payload(job: Job) -> dict:
    return JobResponse(
        external_id=job.external_id,
        status=job.status.value,
        attempts=job.attempts,
        credits_charged=job.credits_charged,
    ).model_dump()


@app.get("/health")
def health() -> dict:
    return envelope({"service": "text-humanizer"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "text-humanizer", "version": settings.app_version})


async def _store_output(job: Job, orchestrator: JobOrchestrator, doc_id: str, updates: dict) -> dict:
    doc = await asyncio.to_thread(update_document, doc_id, updates)
    if not doc:
        # deleted while the job was running
        await orchestrator.refund(job)
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


@app.post("/v1/humanize")
async def humanize(
    payload: HumanizeRequest,
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
) -> dict:
    # Length errors must surface before any ledger row is created.
    orchestrator.validate_text(payload.text)
    if payload.document_id:
        await asyncio.to_thread(_owned_document, payload.document_id, payload.user_id)
    await asyncio.to_thread(ledger.ensure_user, payload.user_id)

    job = await orchestrator.humanize(payload.text, payload.settings, payload.user_id)
    if payload.document_id:
        updates = {
            "original_text": payload.text,
            "humanized_text": job.output_text,
            "ud_document_id": job.external_id,
            "humanization_settings": job.settings.model_dump(),
        }
        if payload.title:
            updates["title"] = payload.title
        doc = await _store_output(job, orchestrator, payload.document_id, updates)
    else:
        doc = await asyncio.to_thread(
            save_document,
            user_id=payload.user_id,
            title=payload.title or DEFAULT_TITLE,
            original_text=payload.text,
            humanized_text=job.output_text,
            humanization_settings=job.settings.model_dump(),
            ud_document_id=job.external_id,
        )
    return envelope({"document": DocumentResponse(**doc).model_dump(), "job": _job_payload(job)})


@app.post("/v1/documents/{doc_id}/rehumanize")
async def rehumanize(
    doc_id: str,
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
    user_id: str = Query(...),
) -> dict:
    doc = await asyncio.to_thread(_owned_document, doc_id, user_id)
    job = await orchestrator.rehumanize(
        doc["ud_document_id"],
        user_id=user_id,
        original_text=doc["original_text"],
        job_settings=DocumentResponse(**doc).humanization_settings,
    )
    doc = await _store_output(
        job, orchestrator, doc_id, {"humanized_text": job.output_text, "ud_document_id": job.external_id}
    )
    return envelope({"document": DocumentResponse(**doc).model_dump(), "job": _job_payload(job)})


@app.post("/v1/documents")
def create_document(payload: DocumentCreateRequest) -> dict:
    doc = save_document(
        user_id=payload.user_id,
        title=payload.title or DEFAULT_TITLE,
        original_text=payload.original_text,
        humanized_text=payload.humanized_text,
        humanization_settings=payload.settings.model_dump(),
        ud_document_id=None,
    )
    return envelope(DocumentResponse(**doc).model_dump())


@app.get("/v1/documents")
def list_documents(user_id: str = Query(...), limit: int = Query(100, ge=1, le=500)) -> dict:
    docs = [DocumentResponse(**d).model_dump() for d in get_documents(user_id, limit=limit)]
    return envelope({"documents": docs})


@app.get("/v1/documents/{doc_id}")
def read_document(doc_id: str, user_id: str = Query(...)) -> dict:
    return envelope(DocumentResponse(**_owned_document(doc_id, user_id)).model_dump())


@app.patch("/v1/documents/{doc_id}")
def edit_document(doc_id: str, payload: DocumentUpdateRequest, user_id: str = Query(...)) -> dict:
    _owned_document(doc_id, user_id)
    updates = payload.model_dump(exclude_none=True)
    if "settings" in updates:
        updates["humanization_settings"] = updates.pop("settings")
    doc = update_document(doc_id, updates)
    return envelope(DocumentResponse(**doc).model_dump())


@app.delete("/v1/documents/{doc_id}")
def remove_document(doc_id: str, user_id: str = Query(...)) -> dict:
    _owned_document(doc_id, user_id)
    delete_document(doc_id)
    return envelope({"id": doc_id, "deleted": True})


@app.get("/v1/credits/{user_id}")
def get_credits(user_id: str) -> dict:
    bal = ledger.get_balance(user_id)
    balance = CreditBalanceResponse(
        user_id=user_id,
        credits_remaining=bal.credits_remaining,
        plan_type=bal.plan_type,
    ).model_dump()
    return envelope({"balance": balance, "recent_transactions": ledger.list_transactions(user_id, limit=20)})


@app.get("/v1/service-credits")
async def service_credits(client: Annotated[HumanizerClient, Depends(get_client)]) -> dict:
    return envelope(await client.check_service_credits())


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    if payload.credits <= 0:
        raise HTTPException(status_code=400, detail="credits must be > 0")
    remaining = ledger.grant(payload.user_id, payload.credits, note=payload.note, plan_type=payload.plan_type)
    bal = ledger.get_balance(payload.user_id)
    return envelope({"user_id": payload.user_id, "credits_remaining": remaining, "plan_type": bal.plan_type})
