import logging
import os
import time
import uuid
from typing import List, Optional

from fastapi import UploadFile
from sqlalchemy.orm import Session

import models
from errors import AccessDeniedError, NotFoundError, ValidationError
from settings import MAX_UPLOAD_FILES, MAX_UPLOAD_SIZE, UPLOAD_DIR

logger = logging.getLogger("CollabBackend.uploads")

ALLOWED_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "application/pdf",
    "text/plain",
    "text/csv",
    "application/json",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/zip",
    "application/x-zip-compressed",
}

DOCUMENT_MARKERS = ("document", "text", "pdf", "word", "excel", "powerpoint")

CHUNK_SIZE = 1024 * 1024


def subdir_for(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "images"
    if any(marker in mime_type for marker in DOCUMENT_MARKERS):
        return "documents"
    return "temp"


def stored_name(original_name: str) -> str:
    _, ext = os.path.splitext(original_name or "")
    return f"{uuid.uuid4()}_{int(time.time() * 1000)}{ext}"


def _validate(files: List[UploadFile]):
    if not files:
        raise ValidationError("No files uploaded")
    if len(files) > MAX_UPLOAD_FILES:
        raise ValidationError(f"At most {MAX_UPLOAD_FILES} files per request")
    for upload in files:
        if upload.content_type not in ALLOWED_TYPES:
            raise ValidationError(f"File type {upload.content_type} not allowed")


async def _write(upload: UploadFile, path: str) -> int:
    size = 0
    with open(path, "wb") as out:
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > MAX_UPLOAD_SIZE:
                raise ValidationError(f"File {upload.filename} exceeds the {MAX_UPLOAD_SIZE // (1024 * 1024)}MB limit")
            out.write(chunk)
    return size


async def store_uploads(db: Session, files: List[UploadFile], user: models.User,
                        project_id: Optional[str] = None) -> List[dict]:
    _validate(files)
    stored = []
    written = []
    try:
        for upload in files:
            folder = os.path.join(UPLOAD_DIR, subdir_for(upload.content_type))
            os.makedirs(folder, exist_ok=True)
            filename = stored_name(upload.filename)
            path = os.path.join(folder, filename)
            written.append(path)
            size = await _write(upload, path)

            record = models.FileUpload(
                filename=filename,
                original_name=upload.filename or filename,
                mime_type=upload.content_type,
                size=size,
                path=path,
                uploaded_by=user.id,
                project_id=project_id,
            )
            db.add(record)
            stored.append(record)
        db.commit()
    except Exception:
        db.rollback()
        for path in written:
            if os.path.exists(path):
                os.remove(path)
        raise

    logger.info(f"Stored {len(stored)} upload(s) for user {user.id}")
    return [record.to_dict() for record in stored]


def get_file(db: Session, file_id: str) -> models.FileUpload:
    record = db.query(models.FileUpload).filter(models.FileUpload.id == file_id).first()
    if record is None:
        raise NotFoundError("File not found")
    if not os.path.exists(record.path):
        raise NotFoundError("File not found on disk")
    return record


def project_files(db: Session, project_id: str) -> List[dict]:
    rows = (
        db.query(models.FileUpload)
        .filter(models.FileUpload.project_id == project_id)
        .order_by(models.FileUpload.created_at.desc())
        .all()
    )
    return [row.to_dict() for row in rows]


def delete_file(db: Session, file_id: str, user: models.User):
    record = db.query(models.FileUpload).filter(models.FileUpload.id == file_id).first()
    if record is None:
        raise NotFoundError("File not found")
    if record.uploaded_by != user.id:
        raise AccessDeniedError("Only the uploader can delete this file")
    if os.path.exists(record.path):
        os.remove(record.path)
    db.delete(record)
    db.commit()
    logger.info(f"Deleted upload {file_id}")


def cleanup_temp_files(max_age_seconds: int = 24 * 60 * 60) -> int:
    temp_dir = os.path.join(UPLOAD_DIR, "temp")
    if not os.path.isdir(temp_dir):
        return 0
    removed = 0
    now = time.time()
    for name in os.listdir(temp_dir):
        path = os.path.join(temp_dir, name)
        if os.path.isfile(path) and now - os.path.getmtime(path) > max_age_seconds:
            os.remove(path)
            removed += 1
            logger.info(f"Cleaned up temp file: {name}")
    return removed
