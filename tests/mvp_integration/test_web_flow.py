from __future__ import annotations

import io
import os
import re
import time
from pathlib import Path
from typing import Any

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from pypdf import PdfReader, PdfWriter
from starlette.datastructures import UploadFile

from bookpress.toolchain import Toolchain
from bookpress.web import app as web_app
from bookpress.web.app import (
    _impose_payload,
    _resolve_request_artifact_path,
    _validate_upload_metadata,
    create_app,
)
from pdf_helpers import FakeTypesetter, numbered_pdf_bytes

pytestmark = pytest.mark.mvp_integration


def _encrypted_pdf_bytes() -> bytes:
    writer = PdfWriter()
    writer.add_blank_page(width=612, height=792)
    writer.encrypt("secret")
    payload = io.BytesIO()
    writer.write(payload)
    return payload.getvalue()


def _request_parts(download_url: str) -> tuple[str, str]:
    parts = download_url.split("/", 3)
    assert len(parts) == 4
    _, _, request_id, filename = parts
    return request_id, filename


def _impose(
    tmp_path: Path,
    layout_template: Path,
    blank_page: Path,
    toolchain: Toolchain,
    *,
    payload: bytes,
    source_name: str = "book.pdf",
    imposition: str = "16signature-A5.tex",
    retention_seconds: int = 24 * 60 * 60,
) -> tuple[dict | None, str | None]:
    artifact_dir = tmp_path / "generated"
    artifact_dir.mkdir(exist_ok=True)
    return _impose_payload(
        payload=payload,
        source_name=source_name,
        imposition=imposition,
        imposition_dir=layout_template.parent,
        blank_page=blank_page,
        toolchain=toolchain,
        artifact_dir=artifact_dir,
        artifact_retention_seconds=retention_seconds,
    )


@pytest.fixture
def client(tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain) -> TestClient:
    app = create_app(
        imposition_dir=layout_template.parent,
        blank_page=blank_page,
        artifact_dir=tmp_path / "generated",
        toolchain=toolchain,
    )
    return TestClient(app)


def test_upload_impose_and_download(tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain) -> None:
    source_name, upload_error = _validate_upload_metadata(
        UploadFile(filename="My Book.pdf", file=io.BytesIO(b"placeholder"))
    )
    assert upload_error is None
    assert source_name == "My Book.pdf"

    result, impose_error = _impose(
        tmp_path, layout_template, blank_page, toolchain, payload=numbered_pdf_bytes(30), source_name=source_name
    )

    assert impose_error is None
    assert result is not None
    assert result["status"] == "success"
    assert result["output_filename"] == "My Book-16signature-A5.pdf"
    assert result["pages_per_segment"] == 16
    assert result["collation"] == "signature"
    assert result["segments"] == 2
    assert result["imposed_segments"] == [1, 2]
    assert result["warnings"] == []

    assert re.fullmatch(r"/download/[a-f0-9]{32}/[^/]+", result["download_url"])
    request_id, filename = _request_parts(result["download_url"])
    resolved = _resolve_request_artifact_path(tmp_path / "generated", request_id, filename)
    assert resolved.is_file()
    assert [path.name for path in resolved.parent.iterdir()] == [filename]


def test_same_filename_uploads_get_unique_request_scoped_artifacts(
    tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain
) -> None:
    payload = numbered_pdf_bytes(9)

    first, first_error = _impose(tmp_path, layout_template, blank_page, toolchain, payload=payload)
    second, second_error = _impose(tmp_path, layout_template, blank_page, toolchain, payload=payload)

    assert first_error is None and second_error is None
    assert first is not None and second is not None
    assert first["download_url"] != second["download_url"]
    assert len(list((tmp_path / "generated").glob("*/*.pdf"))) == 2


def test_failed_segment_is_reported_as_warning(
    tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain
) -> None:
    partial = Toolchain(
        page_counter=toolchain.page_counter,
        page_tool=toolchain.page_tool,
        typesetter=FakeTypesetter(failing_stems={"imposition-segment-0"}),
        markup_compiler=toolchain.markup_compiler,
    )

    result, error = _impose(tmp_path, layout_template, blank_page, partial, payload=numbered_pdf_bytes(20))

    assert error is None
    assert result is not None
    assert result["imposed_segments"] == [2]
    assert len(result["warnings"]) == 1
    assert result["warnings"][0].startswith("Segment 1 was not imposed:")


def test_all_segments_failing_reports_error(tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain) -> None:
    failing = Toolchain(
        page_counter=toolchain.page_counter,
        page_tool=toolchain.page_tool,
        typesetter=FakeTypesetter(failing_stems={"imposition-segment-0"}),
        markup_compiler=toolchain.markup_compiler,
    )

    result, error = _impose(tmp_path, layout_template, blank_page, failing, payload=numbered_pdf_bytes(4))

    assert result is None
    assert error is not None
    assert error.startswith("Imposition failed: none of the 1 planned segments could be imposed")
    assert list((tmp_path / "generated").glob("*/*")) == []


@pytest.mark.parametrize(
    ("imposition", "expected"),
    [
        ("non", "Choose an imposition layout."),
        ("", "Choose an imposition layout."),
        ("32signature-A5.tex", "Unknown imposition layout '32signature-A5.tex'."),
    ],
)
def test_reject_unusable_imposition_choice(
    tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain, imposition: str, expected: str
) -> None:
    result, error = _impose(
        tmp_path, layout_template, blank_page, toolchain, payload=numbered_pdf_bytes(4), imposition=imposition
    )
    assert result is None
    assert error == expected


def test_reject_imposition_path_traversal(tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain) -> None:
    with pytest.raises(HTTPException) as exc_info:
        _impose(tmp_path, layout_template, blank_page, toolchain, payload=numbered_pdf_bytes(4), imposition="../secret")

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Invalid filename"


def test_reject_empty_and_encrypted_uploads(tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain) -> None:
    _, empty_error = _impose(tmp_path, layout_template, blank_page, toolchain, payload=b"")
    _, encrypted_error = _impose(tmp_path, layout_template, blank_page, toolchain, payload=_encrypted_pdf_bytes())

    assert empty_error == "The uploaded file is empty."
    assert encrypted_error == "Encrypted PDFs are not supported. Remove encryption and retry."


def test_reject_non_pdf_and_missing_uploads() -> None:
    assert _validate_upload_metadata(UploadFile(filename="input.txt", file=io.BytesIO(b"x"))) == (
        None,
        "Only .pdf uploads are supported.",
    )
    assert _validate_upload_metadata(None) == (None, "Upload a PDF file to continue.")


@pytest.mark.parametrize("request_id", ["invalid", "abc", "g" * 32, "A" * 32])
def test_download_rejects_invalid_request_id(tmp_path: Path, request_id: str) -> None:
    with pytest.raises(HTTPException) as exc_info:
        _resolve_request_artifact_path(tmp_path, request_id, "output.pdf")

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Invalid request id"


@pytest.mark.parametrize("filename", ["nested/secret.pdf", "..\\secret.pdf"])
def test_download_rejects_path_traversal_filename(tmp_path: Path, filename: str) -> None:
    with pytest.raises(HTTPException) as exc_info:
        _resolve_request_artifact_path(tmp_path, "a" * 32, filename)

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "Invalid filename"


def test_cleanup_removes_stale_generated_artifacts(
    tmp_path: Path, layout_template: Path, blank_page: Path, toolchain: Toolchain
) -> None:
    artifact_dir = tmp_path / "generated"
    stale_request_dir = artifact_dir / ("a" * 32)
    stale_request_dir.mkdir(parents=True)
    (stale_request_dir / "old-16signature-A5.pdf").write_bytes(b"stale")
    fresh_marker_file = artifact_dir / "fresh.marker"
    fresh_marker_file.write_text("fresh", encoding="utf-8")

    stale_timestamp = time.time() - 3600
    os.utime(stale_request_dir, (stale_timestamp, stale_timestamp))

    result, error = _impose(
        tmp_path, layout_template, blank_page, toolchain, payload=numbered_pdf_bytes(4), retention_seconds=60
    )

    assert error is None
    assert result is not None
    assert not stale_request_dir.exists()
    assert fresh_marker_file.exists()


def test_http_health_and_impositions(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}

    response = client.get("/impositions", params={"format": "A5"})
    assert response.status_code == 200
    assert response.json() == {"impositions": ["non", "16signature-A5.tex"]}

    assert client.get("/impositions", params={"format": "A6"}).json() == {"impositions": ["non"]}


def test_http_impositions_missing_folder_returns_404(tmp_path: Path, blank_page: Path, toolchain: Toolchain) -> None:
    app = create_app(
        imposition_dir=tmp_path / "missing",
        blank_page=blank_page,
        artifact_dir=tmp_path / "generated",
        toolchain=toolchain,
    )

    response = TestClient(app).get("/impositions")
    assert response.status_code == 404
    assert response.json() == {"detail": "Imposition folder not found"}


def test_http_impose_and_download(client: TestClient) -> None:
    response = client.post(
        "/impose",
        files={"file": ("draft.pdf", numbered_pdf_bytes(18), "application/pdf")},
        data={"imposition": "16signature-A5.tex"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["output_filename"] == "draft-16signature-A5.pdf"
    assert body["segments"] == 2

    download = client.get(body["download_url"])
    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert len(PdfReader(io.BytesIO(download.content)).pages) == 2


def test_http_impose_rejects_bad_requests(client: TestClient) -> None:
    missing_choice = client.post(
        "/impose",
        files={"file": ("draft.pdf", numbered_pdf_bytes(2), "application/pdf")},
    )
    assert missing_choice.status_code == 400
    assert missing_choice.json() == {"detail": "Choose an imposition layout."}

    not_pdf = client.post(
        "/impose",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        data={"imposition": "16signature-A5.tex"},
    )
    assert not_pdf.status_code == 400
    assert not_pdf.json() == {"detail": "Only .pdf uploads are supported."}


def test_download_expired_request_artifact_returns_actionable_410(client: TestClient) -> None:
    expired_response = client.get(f"/download/{'a' * 32}/missing.pdf")

    assert expired_response.status_code == 410
    assert expired_response.json() == {
        "detail": "This download link has expired after cleanup. Re-run the imposition to create a new link."
    }


def test_http_impose_runs_pipeline_off_the_event_loop(monkeypatch: pytest.MonkeyPatch, client: TestClient) -> None:
    offloaded: list[str] = []
    real_run_in_threadpool = web_app.run_in_threadpool

    async def _recording(func: Any, *args: Any, **kwargs: Any) -> Any:
        offloaded.append(func.__name__)
        return await real_run_in_threadpool(func, *args, **kwargs)

    monkeypatch.setattr(web_app, "run_in_threadpool", _recording)

    response = client.post(
        "/impose",
        files={"file": ("draft.pdf", numbered_pdf_bytes(4), "application/pdf")},
        data={"imposition": "16signature-A5.tex"},
    )

    assert response.status_code == 200
    assert offloaded == ["_impose_payload"]
