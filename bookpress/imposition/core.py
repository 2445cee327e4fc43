from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath
from typing import Sequence, TypeAlias

from bookpress.constants import DEFAULT_PAGES_PER_SEGMENT, SEGMENT_FILENAME, TEMPLATE_SUFFIX
from bookpress.errors import ReorderInvariantViolation

PagePermutation: TypeAlias = list[int]

_SIGNATURE_TOKEN_PATTERN = re.compile(r"(\d+)(signature|cheval)")

# Applied in order; backslashes become "/" before any escape is inserted.
LATEX_PATH_ESCAPES: tuple[tuple[str, str], ...] = (
    ("\\", "/"),
    (" ", "\\ "),
    ("_", "\\_"),
    ("$", "\\$"),
    ("#", "\\#"),
    ("{", "\\{"),
    ("}", "\\}"),
    ("&", "\\&"),
    ("%", "\\%"),
    ("[", "\\["),
    ("]", "\\]"),
)


class Collation(Enum):
    STRAIGHT = "signature"
    CHEVAL = "cheval"


@dataclass(frozen=True)
class SignatureSpec:
    pages_per_segment: int
    collation: Collation
    token: str

    def __post_init__(self) -> None:
        if self.pages_per_segment <= 0:
            raise ValueError("pages_per_segment must be > 0")


@dataclass(frozen=True)
class Segment:
    index: int
    start_page: int
    end_page: int

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1

    @property
    def filename(self) -> str:
        return SEGMENT_FILENAME % (self.index + 1)


def normalize_token(token: str) -> str:
    stripped = token.strip()
    if stripped.endswith(TEMPLATE_SUFFIX):
        stripped = stripped[: -len(TEMPLATE_SUFFIX)]
    return stripped


def parse_signature_spec(token: str) -> SignatureSpec:
    """Resolve a configured imposition token such as ``16signature-A5.tex``.

    The page count comes from the first ``<digits>signature`` or
    ``<digits>cheval`` run and falls back to 16 when the token has none.
    """
    normalized = normalize_token(token)
    match = _SIGNATURE_TOKEN_PATTERN.search(normalized)
    pages = int(match.group(1)) if match else DEFAULT_PAGES_PER_SEGMENT
    collation = Collation.CHEVAL if Collation.CHEVAL.value in normalized else Collation.STRAIGHT
    return SignatureSpec(pages_per_segment=pages, collation=collation, token=normalized)


def adjusted_page_total(total_pages: int, pages_per_segment: int) -> int:
    if pages_per_segment <= 0:
        raise ValueError("pages_per_segment must be > 0")
    if total_pages < 0:
        raise ValueError("total_pages must be >= 0")
    return math.ceil(total_pages / pages_per_segment) * pages_per_segment


def padding_needed(total_pages: int, pages_per_segment: int) -> int:
    return adjusted_page_total(total_pages, pages_per_segment) - total_pages


def plan_segments(total_pages: int, pages_per_segment: int) -> list[Segment]:
    if pages_per_segment <= 0:
        raise ValueError("pages_per_segment must be > 0")
    if total_pages < 0:
        raise ValueError("total_pages must be >= 0")

    segment_count = math.ceil(total_pages / pages_per_segment)
    return [
        Segment(
            index=index,
            start_page=index * pages_per_segment + 1,
            end_page=min((index + 1) * pages_per_segment, total_pages),
        )
        for index in range(segment_count)
    ]


def verify_permutation(pages: Sequence[int], total_pages: int) -> None:
    counts = Counter(pages)
    duplicates = sorted(page for page, count in counts.items() if count > 1)
    missing = sorted(set(range(1, total_pages + 1)) - set(counts))
    out_of_range = sorted(page for page in counts if page < 1 or page > total_pages)

    if duplicates or missing or out_of_range or len(pages) != total_pages:
        raise ReorderInvariantViolation(
            f"page order is not a permutation of 1..{total_pages}: "
            f"duplicates={duplicates} missing={missing} out_of_range={out_of_range}",
            duplicates=duplicates,
            missing=missing,
        )


def cheval_permutation(total_pages: int) -> PagePermutation:
    """Interleave the reversed back half with the front half of the book.

    ``8`` gives ``[8, 1, 7, 2, 6, 3, 5, 4]``.
    """
    if total_pages < 0:
        raise ValueError("total_pages must be >= 0")
    if total_pages % 2 != 0:
        raise ValueError("cheval collation needs an even page total")

    half = total_pages // 2
    front = list(range(1, half + 1))
    back = list(range(total_pages, half, -1))

    pages: PagePermutation = []
    for back_page, front_page in zip(back, front):
        pages.extend((back_page, front_page))

    verify_permutation(pages, total_pages)
    return pages


def escape_latex_path(path: str | PurePath) -> str:
    escaped = str(path)
    for needle, replacement in LATEX_PATH_ESCAPES:
        escaped = escaped.replace(needle, replacement)
    return escaped
