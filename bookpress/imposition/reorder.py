from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bookpress.constants import DOCUMENT_FILLER_FILENAME, EXTENDED_FILENAME, REARRANGED_FILENAME
from bookpress.imposition.artifacts import ArtifactLedger
from bookpress.imposition.core import (
    Collation,
    PagePermutation,
    SignatureSpec,
    adjusted_page_total,
    cheval_permutation,
)
from bookpress.toolchain import PageCounter, PageTool

_LOGGER = logging.getLogger("bookpress.imposition.reorder")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


@dataclass(frozen=True)
class ReorderResult:
    path: Path
    total_pages: int
    padding: int
    permutation: PagePermutation


class ChevalReorderer:
    """Pads the whole document to full signatures and writes it in cheval order."""

    def __init__(self, page_counter: PageCounter, page_tool: PageTool) -> None:
        self.page_counter = page_counter
        self.page_tool = page_tool

    def reorder(
        self,
        pdf_path: Path,
        spec: SignatureSpec,
        blank_page_path: Path,
        work_dir: Path,
        ledger: ArtifactLedger | None = None,
    ) -> ReorderResult:
        if spec.collation is not Collation.CHEVAL:
            raise ValueError(f"cheval reordering requested for '{spec.token}' ({spec.collation.value} collation)")

        artifacts = ledger if ledger is not None else ArtifactLedger()
        total_pages = self.page_counter.page_count(pdf_path)
        adjusted_total = adjusted_page_total(total_pages, spec.pages_per_segment)
        if adjusted_total % 2 != 0:
            raise ValueError(f"cheval collation needs an even page total, '{spec.token}' gives {adjusted_total}")
        padding = adjusted_total - total_pages
        if adjusted_total == 0:
            return ReorderResult(path=pdf_path, total_pages=0, padding=0, permutation=[])

        working_path = pdf_path
        if padding > 0:
            filler_path = artifacts.track(work_dir / DOCUMENT_FILLER_FILENAME)
            self.page_tool.build_filler(blank_page_path, padding, filler_path)
            extended_path = artifacts.track(work_dir / EXTENDED_FILENAME)
            self.page_tool.concat([pdf_path, filler_path], extended_path)
            working_path = extended_path

        permutation = cheval_permutation(adjusted_total)
        rearranged_path = artifacts.track(work_dir / REARRANGED_FILENAME)
        self.page_tool.reorder(working_path, rearranged_path, permutation)

        _log_event(
            logging.INFO,
            "impose.reorder.completed",
            source=str(pdf_path),
            source_pages=total_pages,
            padding=padding,
            total_pages=adjusted_total,
        )
        return ReorderResult(
            path=rearranged_path,
            total_pages=adjusted_total,
            padding=padding,
            permutation=permutation,
        )
