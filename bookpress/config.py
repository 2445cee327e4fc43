"""Runtime configuration for exports and imposition runs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from bookpress.constants import (
    DEFAULT_PAGE_BACKEND,
    DEFAULT_PANDOC,
    DEFAULT_PDFINFO,
    DEFAULT_PDFTK,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
    DEFAULT_XELATEX,
    NO_IMPOSITION_TOKEN,
    PAGE_BACKENDS,
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(*, name: str, raw_value: str) -> bool:
    value = raw_value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got '{raw_value}'")


def _parse_positive_int(*, name: str, raw_value: str, minimum: int = 1) -> int:
    value = int(raw_value)
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return value


def _required_path(source: Mapping[str, str], name: str) -> Path:
    raw = source.get(name, "").strip()
    if not raw:
        raise ValueError(f"Missing required environment variable: {name}")
    return Path(raw).expanduser()


def resolve_page_backend(value: str) -> str:
    normalized = value.strip().lower()
    if normalized in PAGE_BACKENDS:
        return normalized

    valid = ", ".join(PAGE_BACKENDS)
    raise ValueError(f"unsupported page backend '{value}', expected one of: {valid}")


@dataclass(frozen=True, slots=True)
class ToolPaths:
    """Executables for the external collaborators."""

    pandoc: str = DEFAULT_PANDOC
    xelatex: str = DEFAULT_XELATEX
    pdftk: str = DEFAULT_PDFTK
    pdfinfo: str = DEFAULT_PDFINFO
    timeout_seconds: int = DEFAULT_TOOL_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ToolPaths":
        source: Mapping[str, str] = os.environ if environ is None else environ

        values: dict[str, str] = {}
        for attr, default in (
            ("pandoc", DEFAULT_PANDOC),
            ("xelatex", DEFAULT_XELATEX),
            ("pdftk", DEFAULT_PDFTK),
            ("pdfinfo", DEFAULT_PDFINFO),
        ):
            name = f"BOOKPRESS_{attr.upper()}"
            value = source.get(name, default).strip()
            if not value:
                raise ValueError(f"{name} cannot be empty")
            values[attr] = value

        timeout = _parse_positive_int(
            name="BOOKPRESS_TOOL_TIMEOUT_SECONDS",
            raw_value=source.get("BOOKPRESS_TOOL_TIMEOUT_SECONDS", str(DEFAULT_TOOL_TIMEOUT_SECONDS)).strip(),
        )
        return cls(timeout_seconds=timeout, **values)


@dataclass(frozen=True, slots=True)
class ExportSettings:
    """Everything one export needs; built once and passed in, never mutated."""

    output_dir: Path
    template_dir: Path
    imposition_dir: Path
    blank_dir: Path
    document_template: str
    imposition_token: str = NO_IMPOSITION_TOKEN
    keep_intermediates: bool = False
    page_backend: str = DEFAULT_PAGE_BACKEND
    toggles: Mapping[str, bool] = field(default_factory=dict)
    tools: ToolPaths = field(default_factory=ToolPaths)

    @property
    def imposition_enabled(self) -> bool:
        token = self.imposition_token.strip()
        return bool(token) and token != NO_IMPOSITION_TOKEN

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ExportSettings":
        source: Mapping[str, str] = os.environ if environ is None else environ

        output_dir = _required_path(source, "BOOKPRESS_OUTPUT_DIR")
        template_dir = _required_path(source, "BOOKPRESS_TEMPLATE_DIR")
        imposition_dir = Path(source.get("BOOKPRESS_IMPOSITION_DIR", "").strip() or template_dir.parent / "imposition")
        blank_dir = Path(source.get("BOOKPRESS_BLANK_DIR", "").strip() or template_dir.parent / "blank")

        document_template = source.get("BOOKPRESS_TEMPLATE", "").strip()
        if not document_template:
            raise ValueError("Missing required environment variable: BOOKPRESS_TEMPLATE")

        toggles: dict[str, bool] = {}
        for raw_toggle in source.get("BOOKPRESS_TOGGLES", "").split(","):
            toggle = raw_toggle.strip()
            if toggle:
                toggles[toggle] = True

        return cls(
            output_dir=output_dir,
            template_dir=template_dir,
            imposition_dir=imposition_dir,
            blank_dir=blank_dir,
            document_template=document_template,
            imposition_token=source.get("BOOKPRESS_IMPOSITION", NO_IMPOSITION_TOKEN).strip() or NO_IMPOSITION_TOKEN,
            keep_intermediates=_parse_bool(
                name="BOOKPRESS_KEEP_TEMP",
                raw_value=source.get("BOOKPRESS_KEEP_TEMP", "false"),
            ),
            page_backend=resolve_page_backend(source.get("BOOKPRESS_PAGE_BACKEND", DEFAULT_PAGE_BACKEND)),
            toggles=toggles,
            tools=ToolPaths.from_env(source),
        )
