"""Verification session endpoints: download, upload, submit, complete, extend."""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse

from settlement.models import (
    Actor,
    CompleteSessionRequest,
    DownloadResult,
    ExtendDeadlineRequest,
    SessionProgress,
    SubmitSessionRequest,
    UploadResult,
    VerificationItem,
    VerificationSession,
)
from settlement.routes.deps import get_actor
from settlement.workflow.sessions import SessionWorkflow

router = APIRouter(prefix="/api")


def _get_workflow(request: Request) -> SessionWorkflow:
    """Retrieve the session workflow from application state."""
    return request.app.state.workflow


@router.get("/sessions/{session_id}", response_model=SessionProgress)
async def get_session(
    session_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> SessionProgress:
    """Session with completion percentage, pending count and countdown."""
    return _get_workflow(request).get_progress(session_id, actor)


@router.get("/sessions/{session_id}/items", response_model=List[VerificationItem])
async def list_items(
    session_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> List[VerificationItem]:
    return _get_workflow(request).list_items(session_id, actor)


@router.post("/sessions/{session_id}/download", response_model=DownloadResult)
async def download_batch(
    session_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> DownloadResult:
    return _get_workflow(request).download_batch(session_id, actor)


@router.post("/sessions/{session_id}/upload", response_model=UploadResult)
async def upload_verification_results(
    session_id: str,
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    actor: Actor = Depends(get_actor),
):
    """Apply a CSV of verification decisions.

    Returns 200 when every row resolved and 207 when some rows referenced
    transactions outside the session.
    """
    data = await file.read() if file is not None else None
    result = _get_workflow(request).upload_verification_results(
        session_id,
        actor,
        data,
        filename=file.filename if file is not None else None,
        content_type=file.content_type if file is not None else None,
    )
    status_code = 207 if result.status == "partial" else 200
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


@router.post("/sessions/{session_id}/submit", response_model=VerificationSession)
async def submit_session(
    session_id: str,
    request: Request,
    body: Optional[SubmitSessionRequest] = None,
    actor: Actor = Depends(get_actor),
) -> VerificationSession:
    expected_version = body.expected_version if body else None
    return _get_workflow(request).submit_session(session_id, actor, expected_version)


@router.post("/sessions/{session_id}/complete", response_model=VerificationSession)
async def complete_session(
    session_id: str,
    body: CompleteSessionRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> VerificationSession:
    return _get_workflow(request).complete_session(session_id, actor, body.admin_notes)


@router.post("/sessions/{session_id}/extend", response_model=VerificationSession)
async def extend_deadline(
    session_id: str,
    body: ExtendDeadlineRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
) -> VerificationSession:
    return _get_workflow(request).extend_session_deadline(
        session_id, actor, body.extension_hours, body.reason
    )
