from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from bookpress.constants import (
    DOCUMENT_FILLER_FILENAME,
    EXTENDED_FILENAME,
    IMPOSED_SEGMENT_SIDECARS,
    IMPOSED_SEGMENT_STEM,
    MERGED_FILENAME,
    PADDED_SEGMENT_FILENAME,
    REARRANGED_FILENAME,
    SEGMENT_FILENAME,
    SEGMENT_FILLER_FILENAME,
)
from bookpress.errors import (
    BookpressError,
    ImpositionError,
    MissingSegmentError,
    NoSegmentsImposedError,
    TypesettingError,
)
from bookpress.imposition.artifacts import ArtifactLedger
from bookpress.imposition.core import Collation, Segment, SignatureSpec, parse_signature_spec, plan_segments
from bookpress.imposition.reorder import ChevalReorderer
from bookpress.imposition.segment import SegmentImposer
from bookpress.toolchain import Toolchain

_LOGGER = logging.getLogger("bookpress.imposition.pipeline")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


def _name_pattern(template: str) -> str:
    return r"\d+".join(re.escape(part) for part in re.split(r"%\d*d", template))


_INTERMEDIATE_NAME = re.compile(
    "|".join(
        _name_pattern(template)
        for template in (
            SEGMENT_FILENAME,
            SEGMENT_FILLER_FILENAME,
            PADDED_SEGMENT_FILENAME,
            DOCUMENT_FILLER_FILENAME,
            EXTENDED_FILENAME,
            REARRANGED_FILENAME,
            MERGED_FILENAME,
            *(IMPOSED_SEGMENT_STEM + suffix for suffix in IMPOSED_SEGMENT_SIDECARS),
        )
    )
)


def is_intermediate_name(filename: str) -> bool:
    """True when a run may write, and later delete, a file of this name in its work dir."""
    return _INTERMEDIATE_NAME.fullmatch(filename) is not None


class PipelineState(Enum):
    IDLE = "idle"
    PADDING = "padding"
    SPLITTING = "splitting"
    IMPOSING_SEGMENTS = "imposing_segments"
    MERGING = "merging"
    RENAMING = "renaming"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ImpositionConfig:
    imposition_token: str
    layout_template: Path
    blank_page: Path
    work_dir: Path
    keep_intermediates: bool = False


@dataclass(frozen=True)
class SegmentFailure:
    index: int
    path: Path
    reason: str


@dataclass
class ImpositionResult:
    spec: SignatureSpec | None = None
    state: PipelineState = PipelineState.IDLE
    states: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    failed_in: PipelineState | None = None
    total_pages: int = 0
    segments: list[Segment] = field(default_factory=list)
    imposed_paths: list[Path] = field(default_factory=list)
    failures: list[SegmentFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    output_path: Path | None = None
    removed_artifacts: list[Path] = field(default_factory=list)
    retained_artifacts: list[Path] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def imposed_indexes(self) -> list[int]:
        failed = {failure.index for failure in self.failures}
        return [segment.index for segment in self.segments if segment.index not in failed]


class ImpositionPipeline:
    """Pad, reorder, split, impose, merge and rename one exported PDF."""

    def __init__(self, config: ImpositionConfig, toolchain: Toolchain) -> None:
        self.config = config
        self.toolchain = toolchain

    def _transition(self, result: ImpositionResult, state: PipelineState) -> None:
        result.state = state
        result.states.append(state)
        _log_event(logging.DEBUG, "impose.pipeline.state", state=state.value)

    def _record_failure(self, result: ImpositionResult, index: int, path: Path, exc: BookpressError) -> None:
        reason = getattr(exc, "diagnostics", "") or str(exc)
        result.failures.append(SegmentFailure(index=index, path=path, reason=reason))
        result.warnings.append(f"Segment {index + 1} was not imposed: {reason}")
        _log_event(
            logging.WARNING,
            "impose.segment.skipped",
            segment_index=index,
            segment=str(path),
            error_type=type(exc).__name__,
            reason=reason,
        )

    def _check_inputs(self, work_dir: Path, final_path: Path, *, source: Path, blank_page: Path) -> None:
        if source == final_path:
            raise ImpositionError(
                f"source PDF {source} would be overwritten by the imposed output; choose another basename"
            )
        for role, path in (("source PDF", source), ("blank page", blank_page)):
            if path.parent == work_dir and is_intermediate_name(path.name):
                raise ImpositionError(
                    f"{role} {path} would be overwritten by an intermediate file; "
                    "rename it or choose another work directory"
                )

    def output_filename(self, basename: str, spec: SignatureSpec) -> str:
        return f"{basename}-{spec.token}.pdf"

    def run(self, pdf_path: Path, basename: str | None = None) -> ImpositionResult:
        config = self.config
        output_stem = basename or pdf_path.stem
        pdf_path = pdf_path.resolve()
        work_dir = config.work_dir.resolve()
        layout_template = config.layout_template.resolve()
        blank_page = config.blank_page.resolve()
        result = ImpositionResult()
        ledger = ArtifactLedger()

        try:
            if not layout_template.is_file():
                raise ImpositionError(f"layout template not found: {layout_template}")
            spec = parse_signature_spec(config.imposition_token)
            result.spec = spec
            final_path = work_dir / self.output_filename(output_stem, spec)
            self._check_inputs(work_dir, final_path, source=pdf_path, blank_page=blank_page)
            work_dir.mkdir(parents=True, exist_ok=True)
            working_path = pdf_path

            if spec.collation is Collation.CHEVAL:
                self._transition(result, PipelineState.PADDING)
                reorderer = ChevalReorderer(self.toolchain.page_counter, self.toolchain.page_tool)
                reordered = reorderer.reorder(pdf_path, spec, blank_page, work_dir, ledger)
                working_path = reordered.path

            self._transition(result, PipelineState.SPLITTING)
            result.total_pages = self.toolchain.page_counter.page_count(working_path)
            result.segments = plan_segments(result.total_pages, spec.pages_per_segment)
            for segment in result.segments:
                segment_path = ledger.track(work_dir / segment.filename)
                self.toolchain.page_tool.extract_range(
                    working_path,
                    segment_path,
                    segment.start_page,
                    segment.end_page,
                )

            self._transition(result, PipelineState.IMPOSING_SEGMENTS)
            imposer = SegmentImposer(
                self.toolchain.page_counter,
                self.toolchain.page_tool,
                self.toolchain.typesetter,
                work_dir,
            )
            for segment in result.segments:
                segment_path = work_dir / segment.filename
                stem = IMPOSED_SEGMENT_STEM % segment.index
                for suffix in IMPOSED_SEGMENT_SIDECARS:
                    ledger.track(work_dir / f"{stem}{suffix}")

                try:
                    imposed_path = imposer.impose_segment(
                        segment_path,
                        layout_template,
                        blank_page,
                        spec,
                        segment.index,
                    )
                except (MissingSegmentError, TypesettingError) as exc:
                    self._record_failure(result, segment.index, segment_path, exc)
                    continue
                result.imposed_paths.append(imposed_path)

            if not result.imposed_paths:
                raise NoSegmentsImposedError(
                    f"none of the {len(result.segments)} planned segments could be imposed"
                )

            self._transition(result, PipelineState.MERGING)
            merged_path = ledger.track(work_dir / MERGED_FILENAME)
            self.toolchain.page_tool.concat(result.imposed_paths, merged_path)

            self._transition(result, PipelineState.RENAMING)
            merged_path.replace(final_path)
            ledger.forget(merged_path)
            ledger.forget(final_path)
            result.output_path = final_path
        except BookpressError as exc:
            result.failed_in = result.state
            exc.result = result
            _log_event(
                logging.ERROR,
                "impose.pipeline.failed",
                source=str(pdf_path),
                state=result.state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        except Exception:
            result.failed_in = result.state
            raise
        finally:
            self._transition(result, PipelineState.CLEANING_UP)
            if config.keep_intermediates:
                result.retained_artifacts = [path for path in ledger if path.exists()]
            else:
                result.removed_artifacts = ledger.cleanup()
            self._transition(result, PipelineState.FAILED if result.failed_in is not None else PipelineState.DONE)

        _log_event(
            logging.INFO,
            "impose.pipeline.completed",
            source=str(pdf_path),
            output=str(result.output_path),
            token=result.spec.token if result.spec else None,
            segments=len(result.segments),
            imposed=len(result.imposed_paths),
            failed=len(result.failures),
        )
        return result
