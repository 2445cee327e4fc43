from __future__ import annotations

from typing import Final

DEFAULT_PAGES_PER_SEGMENT: Final[int] = 16
NO_IMPOSITION_TOKEN: Final[str] = "non"

LAYOUT_PLACEHOLDER: Final[str] = "export.pdf"
CONTENT_PLACEHOLDER: Final[str] = "\\input{content.tex}"
TEMPLATE_SUFFIX: Final[str] = ".tex"

SEGMENT_FILENAME: Final[str] = "segment-%04d.pdf"
IMPOSED_SEGMENT_STEM: Final[str] = "imposition-segment-%d"
IMPOSED_SEGMENT_SIDECARS: Final[tuple[str, ...]] = (".tex", ".pdf", ".aux", ".log")
SEGMENT_FILLER_FILENAME: Final[str] = "additional-pages-%d.pdf"
PADDED_SEGMENT_FILENAME: Final[str] = "updated-segment-%d.pdf"
DOCUMENT_FILLER_FILENAME: Final[str] = "blank-pages.pdf"
EXTENDED_FILENAME: Final[str] = "extended.pdf"
REARRANGED_FILENAME: Final[str] = "rearranged.pdf"
MERGED_FILENAME: Final[str] = "final-output.pdf"
BLANK_PAGE_FILENAME: Final[str] = "%s-blank.pdf"

TEMP_DIR_NAME: Final[str] = "temp"
TEMP_MARKDOWN_FILENAME: Final[str] = "temp.md"

DEFAULT_PANDOC: Final[str] = "pandoc"
DEFAULT_XELATEX: Final[str] = "xelatex"
DEFAULT_PDFTK: Final[str] = "pdftk"
DEFAULT_PDFINFO: Final[str] = "pdfinfo"
DEFAULT_TOOL_TIMEOUT_SECONDS: Final[int] = 10 * 60

PAGE_BACKENDS: Final[tuple[str, ...]] = ("pdftk", "pypdf")
DEFAULT_PAGE_BACKEND: Final[str] = "pdftk"

DEFAULT_ARTIFACT_DIR: Final[str] = "generated"
DEFAULT_ARTIFACT_RETENTION_SECONDS: Final[int] = 24 * 60 * 60
