from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote, unquote

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from sqlmodel import Session

from video_uploader.auth import require_admin, uploader_identity
from video_uploader.config import CACHE_MAX_AGE_SECONDS, DIRECT_UPLOAD_LIMIT
from video_uploader.core.exceptions import BackendError, NotFoundError, ValidationError
from video_uploader.core.metrics import metrics
from video_uploader.db import get_session
from video_uploader.models import Upload
from video_uploader.schemas import CompleteRequest, MultipartInitRequest
from video_uploader.services.coordinator import UploadCoordinator
from video_uploader.services.direct import DirectUploader
from video_uploader.services.notifier import EmailNotifier
from video_uploader.services.recorder import MetadataRecorder
from video_uploader.sessions import get_session_store
from video_uploader.storage.factory import get_object_store

router = APIRouter()

logger = logging.getLogger("video_uploader")

object_store = get_object_store()
session_store = get_session_store()
notifier = EmailNotifier()


def get_recorder(session: Session = Depends(get_session)) -> MetadataRecorder:
    return MetadataRecorder(session)


def get_coordinator(recorder: MetadataRecorder = Depends(get_recorder)) -> UploadCoordinator:
    return UploadCoordinator(object_store, session_store, recorder)


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("cf-connecting-ip") or request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _download_url(request: Request, file_id: str) -> str:
    return str(request.url_for("download", file_id=file_id))


def _finalized_payload(record: Upload) -> dict:
    return {
        "fileId": record.id,
        "fileName": record.file_name,
        "size": record.file_size,
        "objectKey": record.object_key,
    }


def _schedule_completion_email(
    background_tasks: BackgroundTasks, request: Request, record: Upload, identity: Optional[dict]
) -> None:
    if not notifier.enabled:
        return
    uploader = None
    if identity:
        uploader = identity.get("email") or identity.get("sub")
    background_tasks.add_task(
        notifier.notify_upload_complete,
        file_id=record.id,
        file_name=record.file_name,
        file_size=record.file_size,
        download_url=_download_url(request, record.id),
        ip=record.ip,
        uploader=uploader,
    )


@router.post("/upload")
async def direct_upload(
    request: Request,
    background_tasks: BackgroundTasks,
    recorder: MetadataRecorder = Depends(get_recorder),
    identity: Optional[dict] = Depends(uploader_identity),
):
    raw_name = request.headers.get("x-file-name")
    declared = request.headers.get("content-length")
    uploader = DirectUploader(object_store, recorder, limit=DIRECT_UPLOAD_LIMIT)
    record = await uploader.upload(
        unquote(raw_name) if raw_name else None,
        request.headers.get("content-type"),
        request.stream(),
        declared_size=int(declared) if declared and declared.isdigit() else None,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        uploader_id=identity.get("sub") if identity else None,
    )
    _schedule_completion_email(background_tasks, request, record, identity)
    return _finalized_payload(record)


@router.post("/upload/multipart")
async def init_multipart(
    payload: MultipartInitRequest,
    coordinator: UploadCoordinator = Depends(get_coordinator),
    identity: Optional[dict] = Depends(uploader_identity),
):
    session = await coordinator.init(
        payload.file_name,
        payload.content_type,
        uploader_id=identity.get("sub") if identity else None,
    )
    return {
        "fileId": session.file_id,
        "uploadId": session.upload_id,
        "objectKey": session.object_key,
    }


@router.get("/upload/multipart/{file_id}/parts", dependencies=[Depends(uploader_identity)])
async def list_parts(file_id: str, coordinator: UploadCoordinator = Depends(get_coordinator)):
    session, parts = await coordinator.list_parts(file_id)
    return {
        "fileId": session.file_id,
        "fileName": session.file_name,
        "objectKey": session.object_key,
        "parts": [
            {"partNumber": part.part_number, "etag": part.etag, "size": part.size} for part in parts
        ],
        "uploadedBytes": sum(part.size for part in parts),
    }


@router.put("/upload/part", dependencies=[Depends(uploader_identity)])
async def upload_part(
    request: Request,
    fileId: Optional[str] = Query(default=None),
    partNumber: Optional[str] = Query(default=None),
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    ack = await coordinator.upload_part(fileId, partNumber, request.stream())
    return {"partNumber": ack.part_number, "etag": ack.etag}


@router.post("/upload/complete")
async def complete_multipart(
    payload: CompleteRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    coordinator: UploadCoordinator = Depends(get_coordinator),
    identity: Optional[dict] = Depends(uploader_identity),
):
    try:
        record = await coordinator.complete(
            payload.file_id,
            ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except BackendError as exc:
        if notifier.enabled:
            session = await session_store.get(payload.file_id)
            await run_in_threadpool(
                notifier.notify_upload_failed,
                file_id=payload.file_id,
                file_name=session.file_name if session else "unknown",
                error=exc.detail or exc.message,
            )
        raise
    _schedule_completion_email(background_tasks, request, record, identity)
    return _finalized_payload(record)


@router.get("/download/{file_id}", name="download")
async def download(file_id: str, recorder: MetadataRecorder = Depends(get_recorder)):
    record = recorder.get_completed(file_id)
    if record is None:
        raise NotFoundError("File not found")
    stored = await object_store.get_object(record.object_key)
    if stored is None:
        logger.error("event=download_missing_object file_id=%s object_key=%s", file_id, record.object_key)
        raise NotFoundError("File not found in storage")

    metrics.record_download()
    logger.info("event=file_served file_id=%s object_key=%s", file_id, record.object_key)
    return StreamingResponse(
        stored.body,
        media_type=record.content_type or stored.content_type or "application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(record.file_name)}",
            "Content-Length": str(stored.size),
            "Cache-Control": f"private, max-age={CACHE_MAX_AGE_SECONDS}",
        },
    )


@router.get("/admin/uploads")
async def admin_uploads(
    request: Request,
    limit: int = Query(default=50),
    offset: int = Query(default=0),
    status: str = Query(default="completed"),
    recorder: MetadataRecorder = Depends(get_recorder),
    admin: dict = Depends(require_admin),
):
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)
    if not status:
        raise ValidationError("status must not be empty")
    rows, total = recorder.list_uploads(status=status, limit=limit, offset=offset)
    return {
        "uploads": [
            {
                "id": row.id,
                "fileName": row.file_name,
                "fileSize": row.file_size,
                "contentType": row.content_type,
                "objectKey": row.object_key,
                "ip": row.ip,
                "userAgent": row.user_agent,
                "uploaderId": row.uploader_id,
                "status": row.status,
                "createdAt": row.created_at.isoformat(),
                "updatedAt": row.updated_at.isoformat(),
                "downloadUrl": _download_url(request, row.id),
            }
            for row in rows
        ],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + limit < total,
        },
    }


@router.get("/metrics")
def metrics_snapshot(recorder: MetadataRecorder = Depends(get_recorder)):
    stats = metrics.snapshot()
    totals = recorder.storage_totals()
    payload = {
        **stats,
        "stored_files": totals["total_files"],
        "storage_bytes": totals["total_bytes"],
    }
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response
