"""Wrappers around the external tools the export relies on.

Every collaborator is reached through a small protocol so the imposition
engine never knows whether pages are counted by ``pdfinfo`` or by pypdf.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from bookpress.config import ToolPaths, resolve_page_backend
from bookpress.constants import DEFAULT_TOOL_TIMEOUT_SECONDS
from bookpress.errors import (
    MarkupCompileError,
    PageInfoError,
    PageToolError,
    ToolError,
    TypesettingError,
)

_LOGGER = logging.getLogger("bookpress.toolchain")
_PAGES_PATTERN = re.compile(r"Pages:\s+(\d+)")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


def run_tool(
    command: Sequence[str],
    *,
    error_cls: type[ToolError],
    timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``command`` to completion; any stderr output counts as a failure."""
    argv = [str(part) for part in command]
    _log_event(logging.DEBUG, "tool.run", command=argv, cwd=str(cwd) if cwd else None)

    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(cwd) if cwd else None,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"executable not found: {argv[0]}", command=argv) from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(f"{argv[0]} timed out after {timeout}s", command=argv) from exc
    except OSError as exc:
        raise error_cls(f"{argv[0]} could not be started: {exc}", command=argv) from exc

    diagnostics = (completed.stderr or "").strip()
    if completed.returncode != 0 or diagnostics:
        detail = diagnostics or (completed.stdout or "").strip()[-2000:]
        _log_event(
            logging.WARNING,
            "tool.failed",
            command=argv,
            returncode=completed.returncode,
            diagnostics=detail,
        )
        raise error_cls(
            f"{argv[0]} failed (exit {completed.returncode}): {detail}",
            command=argv,
            returncode=completed.returncode,
            diagnostics=detail,
        )

    return completed


class PageCounter(Protocol):
    def page_count(self, path: Path) -> int: ...


class PageTool(Protocol):
    def extract_range(self, input_path: Path, output_path: Path, start_page: int, end_page: int) -> Path: ...

    def concat(self, input_paths: Sequence[Path], output_path: Path) -> Path: ...

    def build_filler(self, blank_page_path: Path, count: int, output_path: Path) -> Path: ...

    def reorder(self, input_path: Path, output_path: Path, pages: Sequence[int]) -> Path: ...


class Typesetter(Protocol):
    def typeset(self, source_path: Path, output_dir: Path) -> Path: ...


class MarkupConverter(Protocol):
    def compile(self, markdown_path: Path, output_path: Path) -> Path: ...


def _validate_range(start_page: int, end_page: int) -> None:
    if start_page < 1 or end_page < start_page:
        raise PageToolError(f"invalid page range {start_page}-{end_page}")


def _validate_filler_count(count: int) -> None:
    if count <= 0:
        raise ValueError("filler page count must be > 0")


def _ensure_output(path: Path) -> Path:
    if not path.is_file():
        raise PageToolError(f"page tool did not produce {path}")
    return path


@dataclass(frozen=True)
class PdfinfoPageCounter:
    executable: str = "pdfinfo"
    timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS

    def page_count(self, path: Path) -> int:
        completed = run_tool([self.executable, str(path)], error_cls=PageInfoError, timeout=self.timeout)
        match = _PAGES_PATTERN.search(completed.stdout or "")
        if match is None:
            raise PageInfoError(
                f"could not determine the page count of {path}",
                command=[self.executable, str(path)],
                diagnostics=(completed.stdout or "").strip(),
            )
        return int(match.group(1))


@dataclass(frozen=True)
class PdftkPageTool:
    executable: str = "pdftk"
    timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS

    def _cat(self, inputs: Sequence[Path], ranges: Sequence[str], output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        command = [self.executable, *(str(path) for path in inputs), "cat", *ranges, "output", str(output_path)]
        run_tool(command, error_cls=PageToolError, timeout=self.timeout)
        return _ensure_output(output_path)

    def extract_range(self, input_path: Path, output_path: Path, start_page: int, end_page: int) -> Path:
        _validate_range(start_page, end_page)
        return self._cat([input_path], [f"{start_page}-{end_page}"], output_path)

    def concat(self, input_paths: Sequence[Path], output_path: Path) -> Path:
        if not input_paths:
            raise ValueError("concat needs at least one input file")
        return self._cat(list(input_paths), [], output_path)

    def build_filler(self, blank_page_path: Path, count: int, output_path: Path) -> Path:
        _validate_filler_count(count)
        return self._cat([blank_page_path] * count, [], output_path)

    def reorder(self, input_path: Path, output_path: Path, pages: Sequence[int]) -> Path:
        if not pages:
            raise ValueError("reorder needs at least one page")
        return self._cat([input_path], [str(page) for page in pages], output_path)


def _read_pdf(path: Path, error_cls: type[ToolError]) -> PdfReader:
    try:
        return PdfReader(str(path))
    except (PdfReadError, OSError) as exc:
        raise error_cls(f"could not read PDF {path}: {exc}") from exc


def _write_pdf(writer: PdfWriter, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("wb") as handle:
        writer.write(handle)
    return output_path


class PypdfPageCounter:
    def page_count(self, path: Path) -> int:
        return len(_read_pdf(path, PageInfoError).pages)


class PypdfPageTool:
    """In-process page tool with the same semantics as the pdftk wrapper."""

    def extract_range(self, input_path: Path, output_path: Path, start_page: int, end_page: int) -> Path:
        _validate_range(start_page, end_page)
        reader = _read_pdf(input_path, PageToolError)
        if end_page > len(reader.pages):
            raise PageToolError(f"page range {start_page}-{end_page} exceeds {len(reader.pages)} pages in {input_path}")

        writer = PdfWriter()
        for page in reader.pages[start_page - 1 : end_page]:
            writer.add_page(page)
        return _write_pdf(writer, output_path)

    def concat(self, input_paths: Sequence[Path], output_path: Path) -> Path:
        if not input_paths:
            raise ValueError("concat needs at least one input file")

        writer = PdfWriter()
        for input_path in input_paths:
            for page in _read_pdf(input_path, PageToolError).pages:
                writer.add_page(page)
        return _write_pdf(writer, output_path)

    def build_filler(self, blank_page_path: Path, count: int, output_path: Path) -> Path:
        _validate_filler_count(count)
        return self.concat([blank_page_path] * count, output_path)

    def reorder(self, input_path: Path, output_path: Path, pages: Sequence[int]) -> Path:
        if not pages:
            raise ValueError("reorder needs at least one page")

        reader = _read_pdf(input_path, PageToolError)
        writer = PdfWriter()
        for page_number in pages:
            if page_number < 1 or page_number > len(reader.pages):
                raise PageToolError(f"page {page_number} is out of range for {input_path}")
            writer.add_page(reader.pages[page_number - 1])
        return _write_pdf(writer, output_path)


@dataclass(frozen=True)
class XelatexTypesetter:
    executable: str = "xelatex"
    timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS

    def typeset(self, source_path: Path, output_dir: Path) -> Path:
        # absolute paths only: xelatex runs with cwd=output_dir
        source_path = source_path.resolve()
        output_dir = output_dir.resolve()
        output_dir.mkdir(parents=True, exist_ok=True)
        command = [
            self.executable,
            "-interaction=nonstopmode",
            "-halt-on-error",
            f"-output-directory={output_dir}",
            str(source_path),
        ]
        run_tool(command, error_cls=TypesettingError, timeout=self.timeout, cwd=output_dir)

        pdf_path = output_dir / f"{source_path.stem}.pdf"
        if not pdf_path.is_file():
            raise TypesettingError(f"{self.executable} did not produce {pdf_path}", command=command)
        return pdf_path


@dataclass(frozen=True)
class PandocCompiler:
    executable: str = "pandoc"
    timeout: int = DEFAULT_TOOL_TIMEOUT_SECONDS

    def compile(self, markdown_path: Path, output_path: Path) -> Path:
        command = [self.executable, "-f", "markdown", "-t", "latex", str(markdown_path), "-o", str(output_path)]
        run_tool(command, error_cls=MarkupCompileError, timeout=self.timeout)
        if not output_path.is_file():
            raise MarkupCompileError(f"{self.executable} did not produce {output_path}", command=command)
        return output_path


@dataclass(frozen=True)
class Toolchain:
    page_counter: PageCounter
    page_tool: PageTool
    typesetter: Typesetter
    markup_compiler: MarkupConverter


def build_toolchain(tools: ToolPaths | None = None, page_backend: str = "pdftk") -> Toolchain:
    paths = tools or ToolPaths()
    backend = resolve_page_backend(page_backend)

    page_counter: PageCounter
    page_tool: PageTool
    if backend == "pypdf":
        page_counter = PypdfPageCounter()
        page_tool = PypdfPageTool()
    else:
        page_counter = PdfinfoPageCounter(executable=paths.pdfinfo, timeout=paths.timeout_seconds)
        page_tool = PdftkPageTool(executable=paths.pdftk, timeout=paths.timeout_seconds)

    return Toolchain(
        page_counter=page_counter,
        page_tool=page_tool,
        typesetter=XelatexTypesetter(executable=paths.xelatex, timeout=paths.timeout_seconds),
        markup_compiler=PandocCompiler(executable=paths.pandoc, timeout=paths.timeout_seconds),
    )
