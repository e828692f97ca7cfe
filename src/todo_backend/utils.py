from __future__ import annotations

import math
from typing import Any, Dict, Iterable


def total_pages(total: int, size: int) -> int:
    if size <= 0:
        return 0
    return math.ceil(max(total, 0) / size)


# PUBLIC_INTERFACE
def pagination_envelope(items: Iterable[Any], total: int, page: int, size: int) -> Dict[str, Any]:
    """
    Wrap one page of results with the totals a client needs to page through them.

    `page` is 0-based. `total` counts every match, not just this page.
    The keys mirror TodoPage: content, total_elements, total_pages, page, size.
    """
    return {
        "content": list(items),
        "total_elements": int(total),
        "total_pages": total_pages(int(total), int(size)),
        "page": max(int(page), 0),
        "size": max(int(size), 0),
    }
