from __future__ import annotations

from typing import Any, Sequence


class BookpressError(Exception):
    """Base class for every error raised by bookpress.

    The imposition pipeline attaches its partial result as ``result``.
    """

    result: Any = None


class ToolError(BookpressError):
    """An external tool could not be run or reported diagnostics."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = returncode
        self.diagnostics = diagnostics


class PageInfoError(ToolError):
    pass


class PageToolError(ToolError):
    pass


class MarkupCompileError(ToolError):
    pass


class TypesettingError(ToolError):
    def __init__(self, message: str, *, segment_index: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.segment_index = segment_index


class ImpositionError(BookpressError):
    pass


class ReorderInvariantViolation(ImpositionError):
    def __init__(self, message: str, *, duplicates: Sequence[int] = (), missing: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.duplicates = tuple(duplicates)
        self.missing = tuple(missing)


class MissingSegmentError(ImpositionError):
    pass


class NoSegmentsImposedError(ImpositionError):
    pass


class ExportError(BookpressError):
    pass
