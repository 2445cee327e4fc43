"""Markdown -> PDF export, optionally followed by imposition."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from bookpress.config import ExportSettings
from bookpress.constants import TEMP_DIR_NAME, TEMP_MARKDOWN_FILENAME, TEMPLATE_SUFFIX
from bookpress.errors import ExportError
from bookpress.imposition.pipeline import ImpositionConfig, ImpositionPipeline, ImpositionResult
from bookpress.templates import blank_page_path, fill_document_template, template_format
from bookpress.toolchain import Toolchain, build_toolchain

_LOGGER = logging.getLogger("bookpress.export")
_EMBED_PATTERN = re.compile(r"!\[\[([^\]]+)\]\]")
_FRONT_MATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


@dataclass
class ExportResult:
    pdf_path: Path
    imposition: ImpositionResult | None = None
    warnings: list[str] = field(default_factory=list)


def parse_front_matter(markdown: str) -> dict[str, Any]:
    match = _FRONT_MATTER_PATTERN.match(markdown)
    if match is None:
        return {}

    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise ExportError(f"front matter is not valid YAML: {exc}") from exc
    return data if isinstance(data, dict) else {}


def copy_referenced_images(
    markdown: str,
    temp_dir: Path,
    markdown_path: Path,
    vault_root: Path | None = None,
) -> tuple[str, list[str]]:
    """Copy ``![[image]]`` embeds next to the sources and rewrite them as plain links.

    Embeds are looked up relative to the vault root first, then to the
    document's folder; unresolved ones are left as written.
    """
    warnings: list[str] = []
    root = vault_root or markdown_path.parent

    def replace(match: re.Match[str]) -> str:
        reference = match.group(1).strip()
        reference_path = Path(reference)
        candidates = [reference_path] if reference_path.is_absolute() else [root / reference_path]
        candidates.append(markdown_path.parent / reference_path)

        for candidate in candidates:
            if candidate.is_file():
                shutil.copyfile(candidate, temp_dir / reference_path.name)
                return f"![]({reference_path.name})"

        warnings.append(f"Image not found: {reference}")
        _log_event(logging.WARNING, "export.image.missing", reference=reference, document=str(markdown_path))
        return match.group(0)

    return _EMBED_PATTERN.sub(replace, markdown), warnings


def copy_folder_flat(source: Path, destination: Path) -> list[Path]:
    destination.mkdir(parents=True, exist_ok=True)
    copied: list[Path] = []
    for entry in sorted(source.rglob("*")):
        if entry.is_file():
            target = destination / entry.name
            shutil.copyfile(entry, target)
            copied.append(target)
    return copied


def layout_template_name(imposition_token: str) -> str:
    token = imposition_token.strip()
    return token if token.endswith(TEMPLATE_SUFFIX) else f"{token}{TEMPLATE_SUFFIX}"


class DocumentExporter:
    def __init__(self, settings: ExportSettings, toolchain: Toolchain | None = None) -> None:
        self.settings = settings
        self.toolchain = toolchain or build_toolchain(settings.tools, settings.page_backend)

    @property
    def temp_dir(self) -> Path:
        return self.settings.output_dir / TEMP_DIR_NAME

    def export(
        self,
        markdown_path: Path,
        *,
        metadata: Mapping[str, Any] | None = None,
        vault_root: Path | None = None,
    ) -> ExportResult:
        settings = self.settings
        temp_dir = self.temp_dir
        basename = markdown_path.stem
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        temp_dir.mkdir(parents=True, exist_ok=True)

        try:
            markdown = markdown_path.read_text(encoding="utf-8")
            fields = dict(metadata) if metadata is not None else parse_front_matter(markdown)
            rewritten, warnings = copy_referenced_images(markdown, temp_dir, markdown_path, vault_root)
            temp_markdown = temp_dir / TEMP_MARKDOWN_FILENAME
            temp_markdown.write_text(rewritten, encoding="utf-8")

            if settings.template_dir.is_dir():
                copy_folder_flat(settings.template_dir, temp_dir)
            template_path = temp_dir / settings.document_template
            if not template_path.is_file():
                raise ExportError(f"document template not found: {settings.document_template}")
            template_text = template_path.read_text(encoding="utf-8")

            latex_path = temp_dir / f"{basename}{TEMPLATE_SUFFIX}"
            self.toolchain.markup_compiler.compile(temp_markdown, latex_path)
            content = latex_path.read_text(encoding="utf-8")
            latex_path.write_text(
                fill_document_template(template_text, metadata=fields, toggles=settings.toggles, content=content),
                encoding="utf-8",
            )

            typeset_pdf = self.toolchain.typesetter.typeset(latex_path, temp_dir)
            pdf_path = settings.output_dir / f"{basename}.pdf"
            shutil.copyfile(typeset_pdf, pdf_path)
            _log_event(logging.INFO, "export.document.completed", document=str(markdown_path), output=str(pdf_path))

            result = ExportResult(pdf_path=pdf_path, warnings=warnings)
            if settings.imposition_enabled:
                result.imposition = self._impose(pdf_path, basename)
                result.warnings.extend(result.imposition.warnings)
            return result
        finally:
            if not settings.keep_intermediates:
                self._remove_temp_dir()

    def _impose(self, pdf_path: Path, basename: str) -> ImpositionResult:
        settings = self.settings
        fmt = template_format(settings.document_template)
        blank_page = blank_page_path(settings.blank_dir, fmt)
        local_blank_page = self.temp_dir / blank_page.name
        shutil.copyfile(blank_page, local_blank_page)

        config = ImpositionConfig(
            imposition_token=settings.imposition_token,
            layout_template=settings.imposition_dir / layout_template_name(settings.imposition_token),
            blank_page=local_blank_page,
            work_dir=settings.output_dir,
            keep_intermediates=settings.keep_intermediates,
        )
        return ImpositionPipeline(config, self.toolchain).run(pdf_path, basename=basename)

    def _remove_temp_dir(self) -> None:
        try:
            shutil.rmtree(self.temp_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            _log_event(logging.WARNING, "export.cleanup.failed", path=str(self.temp_dir), error=str(exc))
