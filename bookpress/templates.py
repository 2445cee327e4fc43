"""LaTeX template discovery and placeholder substitution."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from bookpress.constants import (
    BLANK_PAGE_FILENAME,
    CONTENT_PLACEHOLDER,
    LAYOUT_PLACEHOLDER,
    NO_IMPOSITION_TOKEN,
    TEMPLATE_SUFFIX,
)
from bookpress.errors import ExportError

_FIELD_PATTERN = re.compile(r"\{\{(\w+)\}\}")
_TOGGLE_PATTERN = re.compile(r"\\newif\\if(\w+)")
_TOGGLE_PREFIX = "show"


@dataclass(frozen=True)
class TemplateToggle:
    name: str
    setting_key: str

    @property
    def label(self) -> str:
        words = re.sub(r"([A-Z])", r" \1", self.setting_key.removeprefix(_TOGGLE_PREFIX)).strip()
        return words[:1].upper() + words[1:]


class SubstitutionTable:
    """Literal token -> replacement pairs applied in one regex pass.

    Longer tokens win over their prefixes, and a token ending in a word
    character only matches when the next character is not one.
    """

    def __init__(self, entries: Mapping[str, str] | None = None) -> None:
        self._entries: dict[str, str] = {}
        for token, replacement in (entries or {}).items():
            self.add(token, replacement)

    def add(self, token: str, replacement: str) -> None:
        if not token:
            raise ValueError("substitution token cannot be empty")
        self._entries[token] = replacement

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return token in self._entries

    def _pattern(self) -> re.Pattern[str]:
        alternatives = []
        for token in sorted(self._entries, key=len, reverse=True):
            piece = re.escape(token)
            if token[-1].isalnum() or token[-1] == "_":
                piece += r"(?!\w)"
            alternatives.append(piece)
        return re.compile("|".join(alternatives))

    def apply(self, text: str) -> str:
        if not self._entries:
            return text
        return self._pattern().sub(lambda match: self._entries[match.group(0)], text)


def find_dynamic_fields(text: str) -> list[str]:
    return list(dict.fromkeys(_FIELD_PATTERN.findall(text)))


def find_toggle_fields(text: str) -> list[TemplateToggle]:
    toggles = []
    for name in dict.fromkeys(_TOGGLE_PATTERN.findall(text)):
        toggles.append(TemplateToggle(name=name, setting_key=f"{_TOGGLE_PREFIX}{name[:1].upper()}{name[1:]}"))
    return toggles


def document_substitutions(
    template_text: str,
    *,
    metadata: Mapping[str, Any] | None = None,
    toggles: Mapping[str, bool] | None = None,
    content: str | None = None,
) -> SubstitutionTable:
    """Build the table that turns a document template into a typesettable source.

    Missing metadata leaves the field name itself in place of ``{{field}}``.
    Each ``\\newif\\if<name>`` gets the chosen ``\\<name>true``/``\\<name>false``
    right after it, and any existing switch lines for it are dropped.
    """
    values = metadata or {}
    flags = toggles or {}
    table = SubstitutionTable()

    for field_name in find_dynamic_fields(template_text):
        value = values.get(field_name)
        table.add(f"{{{{{field_name}}}}}", str(value) if value not in (None, "") else field_name)

    for toggle in find_toggle_fields(template_text):
        switch = "true" if flags.get(toggle.setting_key) else "false"
        table.add(f"\\{toggle.name}true", "")
        table.add(f"\\{toggle.name}false", "")
        table.add(f"\\newif\\if{toggle.name}", f"\\newif\\if{toggle.name}\n\\{toggle.name}{switch}")

    if content is not None:
        table.add(CONTENT_PLACEHOLDER, content)

    return table


def fill_document_template(
    template_text: str,
    *,
    metadata: Mapping[str, Any] | None = None,
    toggles: Mapping[str, bool] | None = None,
    content: str | None = None,
) -> str:
    table = document_substitutions(template_text, metadata=metadata, toggles=toggles, content=content)
    return table.apply(template_text)


def fill_layout_template(template_text: str, escaped_segment_path: str) -> str:
    return SubstitutionTable({LAYOUT_PLACEHOLDER: escaped_segment_path}).apply(template_text)


def list_templates(folder: Path, extension: str = TEMPLATE_SUFFIX) -> list[str]:
    if not folder.is_dir():
        raise ExportError(f"template folder not found: {folder}")
    return sorted(child.name for child in folder.iterdir() if child.is_file() and child.name.endswith(extension))


def template_format(template_name: str) -> str:
    """``book-A5.tex`` -> ``A5``."""
    parts = Path(template_name).name.split("-")
    if len(parts) < 2 or not parts[1]:
        raise ExportError(f"template name '{template_name}' does not follow '<name>-<format>.tex'")
    return parts[1].removesuffix(TEMPLATE_SUFFIX)


def list_impositions(folder: Path, fmt: str | None = None) -> list[str]:
    names = list_templates(folder)
    if fmt:
        names = [name for name in names if fmt in name]
    return names


def imposition_choices(names: Iterable[str]) -> list[str]:
    return [NO_IMPOSITION_TOKEN, *names]


def blank_page_path(blank_dir: Path, fmt: str) -> Path:
    path = blank_dir / (BLANK_PAGE_FILENAME % fmt)
    if not path.is_file():
        raise ExportError(f"blank page file not found: {path}")
    return path
