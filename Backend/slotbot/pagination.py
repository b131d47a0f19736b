import math
from dataclasses import dataclass
from typing import Generic, List, Sequence, TypeVar

T = TypeVar("T")

MY_SLOTS_PAGE_SIZE = 5
BOOK_SLOTS_PAGE_SIZE = 10


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    total_pages: int

    @property
    def has_previous(self) -> bool:
        return self.page > 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages - 1


def paginate(items: Sequence[T], page: int, page_size: int) -> Page[T]:
    """Slice one page out of items, clamping page into [0, total_pages - 1]."""
    total_pages = math.ceil(len(items) / page_size)
    page = max(0, min(page, total_pages - 1))
    start = page * page_size
    return Page(items=list(items[start:start + page_size]), page=page, total_pages=total_pages)
