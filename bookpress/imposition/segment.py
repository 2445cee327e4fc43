from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from bookpress.constants import IMPOSED_SEGMENT_STEM, PADDED_SEGMENT_FILENAME, SEGMENT_FILLER_FILENAME
from bookpress.errors import MissingSegmentError, TypesettingError
from bookpress.imposition.artifacts import ArtifactLedger
from bookpress.imposition.core import SignatureSpec, escape_latex_path
from bookpress.templates import fill_layout_template
from bookpress.toolchain import PageCounter, PageTool, Typesetter

_LOGGER = logging.getLogger("bookpress.imposition.segment")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


class SegmentImposer:
    """Places one segment onto the layout template and typesets the result."""

    def __init__(
        self,
        page_counter: PageCounter,
        page_tool: PageTool,
        typesetter: Typesetter,
        work_dir: Path,
    ) -> None:
        self.page_counter = page_counter
        self.page_tool = page_tool
        self.typesetter = typesetter
        self.work_dir = work_dir

    def _pad_segment(
        self,
        segment_path: Path,
        blank_page_path: Path,
        spec: SignatureSpec,
        index: int,
        scratch: ArtifactLedger,
    ) -> Path:
        page_count = self.page_counter.page_count(segment_path)
        if not 0 < page_count < spec.pages_per_segment:
            return segment_path

        missing_pages = spec.pages_per_segment - page_count
        filler_path = scratch.track(self.work_dir / (SEGMENT_FILLER_FILENAME % index))
        self.page_tool.build_filler(blank_page_path, missing_pages, filler_path)
        padded_path = scratch.track(self.work_dir / (PADDED_SEGMENT_FILENAME % index))
        self.page_tool.concat([segment_path, filler_path], padded_path)

        _log_event(
            logging.INFO,
            "impose.segment.padded",
            segment_index=index,
            source_pages=page_count,
            filler_pages=missing_pages,
        )
        return padded_path

    def impose_segment(
        self,
        segment_path: Path,
        layout_template_path: Path,
        blank_page_path: Path,
        spec: SignatureSpec,
        index: int,
    ) -> Path:
        if not segment_path.is_file():
            raise MissingSegmentError(f"segment not found: {segment_path}")

        scratch = ArtifactLedger()
        try:
            chosen_path = self._pad_segment(segment_path, blank_page_path, spec, index, scratch)

            template_text = layout_template_path.read_text(encoding="utf-8")
            source_text = fill_layout_template(template_text, escape_latex_path(chosen_path.resolve()))

            source_path = scratch.track(self.work_dir / f"{IMPOSED_SEGMENT_STEM % index}.tex")
            source_path.write_text(source_text, encoding="utf-8")

            try:
                imposed_path = self.typesetter.typeset(source_path, self.work_dir)
            except TypesettingError as exc:
                exc.segment_index = index
                _log_event(
                    logging.WARNING,
                    "impose.segment.typesetting_failed",
                    segment_index=index,
                    segment=str(segment_path),
                    diagnostics=exc.diagnostics or str(exc),
                )
                raise
        finally:
            scratch.cleanup()

        _log_event(logging.INFO, "impose.segment.completed", segment_index=index, output=str(imposed_path))
        return imposed_path
