from bookpress.imposition.artifacts import ArtifactLedger
from bookpress.imposition.core import (
    Collation,
    PagePermutation,
    Segment,
    SignatureSpec,
    adjusted_page_total,
    cheval_permutation,
    escape_latex_path,
    padding_needed,
    parse_signature_spec,
    plan_segments,
    verify_permutation,
)
from bookpress.imposition.pipeline import (
    ImpositionConfig,
    ImpositionPipeline,
    ImpositionResult,
    PipelineState,
    SegmentFailure,
)
from bookpress.imposition.reorder import ChevalReorderer, ReorderResult
from bookpress.imposition.segment import SegmentImposer

__all__ = [
    "ArtifactLedger",
    "ChevalReorderer",
    "Collation",
    "ImpositionConfig",
    "ImpositionPipeline",
    "ImpositionResult",
    "PagePermutation",
    "PipelineState",
    "ReorderResult",
    "Segment",
    "SegmentFailure",
    "SegmentImposer",
    "SignatureSpec",
    "adjusted_page_total",
    "cheval_permutation",
    "escape_latex_path",
    "padding_needed",
    "parse_signature_spec",
    "plan_segments",
    "verify_permutation",
]
