"""Command-line entry point: ``bookpress export`` and ``bookpress impose``."""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import replace
from pathlib import Path

from dotenv import load_dotenv

from bookpress.config import ExportSettings, ToolPaths, resolve_page_backend
from bookpress.constants import DEFAULT_PAGE_BACKEND, PAGE_BACKENDS
from bookpress.errors import BookpressError
from bookpress.export import DocumentExporter
from bookpress.imposition.pipeline import ImpositionConfig, ImpositionPipeline, ImpositionResult
from bookpress.toolchain import build_toolchain

LOGGER = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bookpress", description="Export documents to print-ready, imposed PDFs")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    export = subparsers.add_parser("export", help="Typeset a markdown document and optionally impose it")
    export.add_argument("markdown", help="Markdown document to export")
    export.add_argument("--template", help="Document template file name (overrides BOOKPRESS_TEMPLATE)")
    export.add_argument("--imposition", help="Imposition token, e.g. 16signature-A5.tex, or 'non'")
    export.add_argument("--output-dir", help="Output folder (overrides BOOKPRESS_OUTPUT_DIR)")
    export.add_argument("--vault-root", help="Folder used to resolve ![[image]] embeds")
    export.add_argument("--toggle", action="append", default=[], help="Enable a template toggle, e.g. showToc")
    export.add_argument("--keep-temp", action="store_true", help="Keep intermediate files")

    impose = subparsers.add_parser("impose", help="Impose an existing PDF onto a layout template")
    impose.add_argument("pdf", help="PDF to impose")
    impose.add_argument("--layout", required=True, help="Layout template (.tex) containing export.pdf")
    impose.add_argument("--blank-page", required=True, help="Single blank page PDF used for padding")
    impose.add_argument("--imposition", help="Imposition token; defaults to the layout file name")
    impose.add_argument("--work-dir", help="Working/output folder; defaults to the PDF's folder")
    impose.add_argument("--basename", help="Base name of the final file; defaults to the PDF's stem")
    impose.add_argument(
        "--page-backend",
        choices=PAGE_BACKENDS,
        help="Tool used to count, split and merge pages; defaults to BOOKPRESS_PAGE_BACKEND or pdftk",
    )
    impose.add_argument("--keep-temp", action="store_true", help="Keep intermediate files")
    return parser.parse_args(argv)


def _report_imposition(result: ImpositionResult) -> None:
    for warning in result.warnings:
        LOGGER.warning(warning)
    LOGGER.info(
        "Imposed %d of %d segments into %s",
        len(result.imposed_paths),
        len(result.segments),
        result.output_path,
    )


def _run_export(args: argparse.Namespace) -> int:
    settings = ExportSettings.from_env()
    overrides: dict[str, object] = {}
    if args.template:
        overrides["document_template"] = args.template
    if args.imposition:
        overrides["imposition_token"] = args.imposition
    if args.output_dir:
        overrides["output_dir"] = Path(args.output_dir)
    if args.keep_temp:
        overrides["keep_intermediates"] = True
    if args.toggle:
        overrides["toggles"] = {**settings.toggles, **{name: True for name in args.toggle}}
    settings = replace(settings, **overrides)

    exporter = DocumentExporter(settings)
    result = exporter.export(
        Path(args.markdown),
        vault_root=Path(args.vault_root) if args.vault_root else None,
    )
    LOGGER.info("Converted to PDF at %s", result.pdf_path)
    if result.imposition is not None:
        _report_imposition(result.imposition)
    else:
        for warning in result.warnings:
            LOGGER.warning(warning)
    return 0


def _run_impose(args: argparse.Namespace) -> int:
    pdf_path = Path(args.pdf)
    if not pdf_path.is_file():
        LOGGER.error("PDF not found: %s", pdf_path)
        return 2

    layout = Path(args.layout)
    config = ImpositionConfig(
        imposition_token=args.imposition or layout.name,
        layout_template=layout,
        blank_page=Path(args.blank_page),
        work_dir=Path(args.work_dir) if args.work_dir else pdf_path.parent,
        keep_intermediates=args.keep_temp,
    )
    page_backend = args.page_backend or os.environ.get("BOOKPRESS_PAGE_BACKEND", DEFAULT_PAGE_BACKEND)
    toolchain = build_toolchain(ToolPaths.from_env(), resolve_page_backend(page_backend))
    result = ImpositionPipeline(config, toolchain).run(pdf_path, basename=args.basename)
    _report_imposition(result)
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        if args.command == "export":
            return _run_export(args)
        return _run_impose(args)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2
    except BookpressError as exc:
        LOGGER.error("Export failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
