from __future__ import annotations

import io
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Mapping
from uuid import uuid4

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from bookpress.config import ToolPaths, resolve_page_backend
from bookpress.constants import (
    DEFAULT_ARTIFACT_DIR,
    DEFAULT_ARTIFACT_RETENTION_SECONDS,
    DEFAULT_PAGE_BACKEND,
    NO_IMPOSITION_TOKEN,
)
from bookpress.errors import BookpressError
from bookpress.export import layout_template_name
from bookpress.imposition.core import normalize_token
from bookpress.imposition.pipeline import ImpositionConfig, ImpositionPipeline
from bookpress.templates import imposition_choices, list_impositions
from bookpress.toolchain import Toolchain, build_toolchain

_REQUEST_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
_EXPIRED_ARTIFACT_MESSAGE = "This download link has expired after cleanup. Re-run the imposition to create a new link."
_LOGGER = logging.getLogger("bookpress.web")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


def _cleanup_stale_artifacts(
    artifact_dir: Path,
    *,
    retention_seconds: int,
    now: float | None = None,
) -> int:
    if retention_seconds < 0:
        return 0

    cutoff = (time.time() if now is None else now) - retention_seconds
    removed = 0
    for child in artifact_dir.iterdir():
        try:
            is_stale = child.stat().st_mtime < cutoff
        except FileNotFoundError:
            continue

        if not is_stale:
            continue

        if child.is_dir():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink(missing_ok=True)
        removed += 1

    return removed


def _validated_filename(filename: str) -> str:
    if "\\" in filename:
        raise HTTPException(status_code=400, detail="Invalid filename")

    safe_name = Path(filename).name
    if safe_name != filename or safe_name in {"", ".", ".."}:
        raise HTTPException(status_code=400, detail="Invalid filename")
    return safe_name


def _validate_upload_metadata(file: UploadFile | None) -> tuple[str | None, str | None]:
    if file is None or not file.filename:
        return None, "Upload a PDF file to continue."

    source_name = Path(file.filename).name
    if Path(source_name).suffix.lower() != ".pdf":
        return None, "Only .pdf uploads are supported."

    return source_name, None


def _validate_payload(payload: bytes, *, job_id: str | None, source_name: str) -> str | None:
    if not payload:
        _log_event(logging.WARNING, "impose.job.empty_upload", job_id=job_id, source_name=source_name)
        return "The uploaded file is empty."

    try:
        reader = PdfReader(io.BytesIO(payload))
    except PdfReadError:
        _log_event(
            logging.WARNING,
            "impose.job.invalid_pdf",
            job_id=job_id,
            source_name=source_name,
            payload_bytes=len(payload),
        )
        return "The upload could not be parsed as a PDF. Verify the file is a valid, non-corrupted PDF and retry."

    if reader.is_encrypted:
        _log_event(logging.WARNING, "impose.job.encrypted_pdf", job_id=job_id, source_name=source_name)
        return "Encrypted PDFs are not supported. Remove encryption and retry."

    return None


def _resolve_imposition(imposition_dir: Path, imposition: str) -> tuple[Path | None, str | None]:
    token = imposition.strip()
    if not token or token == NO_IMPOSITION_TOKEN:
        return None, "Choose an imposition layout."

    layout_name = _validated_filename(layout_template_name(token))
    layout_path = imposition_dir / layout_name
    if not layout_path.is_file():
        return None, f"Unknown imposition layout '{token}'."
    return layout_path, None


def _impose_payload(
    *,
    payload: bytes,
    source_name: str,
    imposition: str,
    imposition_dir: Path,
    blank_page: Path,
    toolchain: Toolchain,
    artifact_dir: Path,
    artifact_retention_seconds: int,
    job_id: str | None = None,
) -> tuple[dict[str, Any] | None, str | None]:
    payload_error = _validate_payload(payload, job_id=job_id, source_name=source_name)
    if payload_error is not None:
        return None, payload_error

    layout_path, layout_error = _resolve_imposition(imposition_dir, imposition)
    if layout_error is not None or layout_path is None:
        return None, layout_error

    removed = _cleanup_stale_artifacts(
        artifact_dir,
        retention_seconds=artifact_retention_seconds,
    )

    request_id = uuid4().hex
    request_artifact_dir = artifact_dir / request_id
    request_artifact_dir.mkdir(parents=True, exist_ok=True)
    source_path = request_artifact_dir / "upload.pdf"
    source_path.write_bytes(payload)

    config = ImpositionConfig(
        imposition_token=normalize_token(imposition),
        layout_template=layout_path,
        blank_page=blank_page,
        work_dir=request_artifact_dir,
    )
    try:
        result = ImpositionPipeline(config, toolchain).run(source_path, basename=Path(source_name).stem)
    except ValueError as exc:
        _log_event(
            logging.WARNING,
            "impose.job.unsupported_options",
            job_id=job_id,
            source_name=source_name,
            error=str(exc),
        )
        return None, f"Unsupported options for imposition: {exc}."
    except BookpressError as exc:
        _log_event(
            logging.WARNING,
            "impose.job.failed",
            job_id=job_id,
            source_name=source_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None, f"Imposition failed: {exc}"
    except Exception:
        _LOGGER.exception(
            "impose.job.unexpected_failure",
            extra={
                "event_name": "impose.job.unexpected_failure",
                "event_fields": {"job_id": job_id, "source_name": source_name},
            },
        )
        return None, "Imposition failed unexpectedly. Retry and check server logs for the associated job."
    finally:
        source_path.unlink(missing_ok=True)

    if result.output_path is None:
        return None, "Imposition produced no output."

    output_name = result.output_path.name
    _log_event(
        logging.INFO,
        "impose.job.completed",
        job_id=job_id,
        request_id=request_id,
        source_name=source_name,
        segments=len(result.segments),
        imposed_segments=len(result.imposed_paths),
        failed_segments=len(result.failures),
        stale_artifacts_removed=removed,
    )

    return {
        "status": "success",
        "message": "Imposition complete.",
        "download_url": f"/download/{request_id}/{output_name}",
        "output_filename": output_name,
        "pages_per_segment": result.spec.pages_per_segment if result.spec else None,
        "collation": result.spec.collation.value if result.spec else None,
        "segments": len(result.segments),
        "imposed_segments": [index + 1 for index in result.imposed_indexes],
        "warnings": list(result.warnings),
    }, None


def _resolve_request_artifact_path(artifact_dir: Path, request_id: str, filename: str) -> Path:
    if _REQUEST_ID_PATTERN.fullmatch(request_id) is None:
        _log_event(logging.WARNING, "download.request.invalid_request_id", request_id=request_id, filename=filename)
        raise HTTPException(status_code=400, detail="Invalid request id")

    safe_name = _validated_filename(filename)
    request_artifact_dir = artifact_dir / request_id
    if not request_artifact_dir.is_dir():
        _log_event(logging.WARNING, "download.request.expired", request_id=request_id, filename=safe_name)
        raise HTTPException(status_code=410, detail=_EXPIRED_ARTIFACT_MESSAGE)

    file_path = request_artifact_dir / safe_name
    if not file_path.is_file():
        _log_event(logging.WARNING, "download.request.missing_file", request_id=request_id, filename=safe_name)
        raise HTTPException(status_code=404, detail="File not found")

    return file_path


def create_app(
    *,
    imposition_dir: Path,
    blank_page: Path,
    artifact_dir: Path | None = None,
    artifact_retention_seconds: int = DEFAULT_ARTIFACT_RETENTION_SECONDS,
    toolchain: Toolchain | None = None,
) -> FastAPI:
    app = FastAPI(title="Bookpress", version="0.1.0")

    target_artifact_dir = artifact_dir or (Path.cwd() / DEFAULT_ARTIFACT_DIR)
    target_artifact_dir.mkdir(parents=True, exist_ok=True)
    app.state.artifact_dir = target_artifact_dir
    app.state.artifact_retention_seconds = artifact_retention_seconds
    app.state.imposition_dir = imposition_dir
    app.state.blank_page = blank_page
    app.state.toolchain = toolchain or build_toolchain()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/impositions")
    def impositions(format: str | None = None) -> dict[str, list[str]]:
        try:
            names = list_impositions(app.state.imposition_dir, format)
        except BookpressError as exc:
            _log_event(logging.WARNING, "impositions.list.failed", error=str(exc))
            raise HTTPException(status_code=404, detail="Imposition folder not found") from exc
        return {"impositions": imposition_choices(names)}

    @app.post("/impose")
    async def impose(
        file: UploadFile | None = File(default=None),
        imposition: str = Form(NO_IMPOSITION_TOKEN),
    ) -> dict[str, Any]:
        job_id = uuid4().hex
        _log_event(
            logging.INFO,
            "impose.request.received",
            job_id=job_id,
            imposition=imposition,
            has_upload=file is not None and bool(file.filename),
        )

        source_name, upload_error = _validate_upload_metadata(file)
        if upload_error is not None or file is None or source_name is None:
            _log_event(logging.WARNING, "impose.request.upload_validation_failed", job_id=job_id, error=upload_error)
            raise HTTPException(status_code=400, detail=upload_error or "Upload a PDF file to continue.")

        payload = await file.read()
        result, impose_error = await run_in_threadpool(
            _impose_payload,
            payload=payload,
            source_name=source_name,
            imposition=imposition,
            imposition_dir=app.state.imposition_dir,
            blank_page=app.state.blank_page,
            toolchain=app.state.toolchain,
            artifact_dir=app.state.artifact_dir,
            artifact_retention_seconds=app.state.artifact_retention_seconds,
            job_id=job_id,
        )
        if impose_error is not None or result is None:
            _log_event(logging.WARNING, "impose.request.failed", job_id=job_id, source_name=source_name, error=impose_error)
            raise HTTPException(status_code=400, detail=impose_error or "Imposition failed.")

        _log_event(
            logging.INFO,
            "impose.request.succeeded",
            job_id=job_id,
            source_name=source_name,
            output_filename=result["output_filename"],
            download_url=result["download_url"],
            warnings=len(result["warnings"]),
        )
        return result

    @app.get("/download/{request_id}/{filename:path}")
    def download_request_artifact(request_id: str, filename: str) -> FileResponse:
        file_path = _resolve_request_artifact_path(app.state.artifact_dir, request_id, filename)
        return FileResponse(path=file_path, media_type="application/pdf", filename=file_path.name)

    return app


def app_from_env(environ: Mapping[str, str] | None = None) -> FastAPI:
    """Factory for ``uvicorn --factory bookpress.web.app:app_from_env``."""
    source: Mapping[str, str] = os.environ if environ is None else environ

    imposition_dir = source.get("BOOKPRESS_IMPOSITION_DIR", "").strip()
    blank_page = source.get("BOOKPRESS_BLANK_PAGE", "").strip()
    if not imposition_dir or not blank_page:
        raise ValueError("BOOKPRESS_IMPOSITION_DIR and BOOKPRESS_BLANK_PAGE must be set")

    artifact_dir = source.get("BOOKPRESS_ARTIFACT_DIR", "").strip()
    return create_app(
        imposition_dir=Path(imposition_dir),
        blank_page=Path(blank_page),
        artifact_dir=Path(artifact_dir) if artifact_dir else None,
        toolchain=build_toolchain(
            ToolPaths.from_env(source),
            resolve_page_backend(source.get("BOOKPRESS_PAGE_BACKEND", DEFAULT_PAGE_BACKEND)),
        ),
    )
