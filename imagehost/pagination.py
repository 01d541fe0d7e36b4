import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

PAGE_SIZE = 20

_LEADING_INT_PATTERN = re.compile(r"^\s*([+-]?\d+)")


@dataclass(frozen=True)
class Page:
    """A window over the full ordered filename sequence."""

    index: int
    size: int
    prev: Optional[int]
    next: Optional[int]
    files: List[str]


def paginate(items: Sequence[str], size: int, index: int) -> List[str]:
    """Return the ``index``-th window of ``size`` items (1-based).

    Out-of-range windows are empty. Non-positive indices are not validated:
    the slice bounds simply go negative and count from the end.
    """

    return list(items[(index - 1) * size : index * size])


def build_page(items: Sequence[str], size: int = PAGE_SIZE, index: int = 1) -> Page:
    prev_index = index - 1 if index > 1 and paginate(items, size, index - 1) else None
    next_index = index + 1 if paginate(items, size, index + 1) else None
    return Page(
        index=index,
        size=size,
        prev=prev_index,
        next=next_index,
        files=paginate(items, size, index),
    )


def parse_page_index(raw: Optional[str]) -> int:
    """Parse the leading integer of the ``page`` query argument.

    Missing or non-numeric values fall back to the first page.
    """

    if not raw:
        return 1
    match = _LEADING_INT_PATTERN.match(raw)
    if not match:
        return 1
    return int(match.group(1))
