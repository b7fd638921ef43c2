"""Cursor-driven page sequences for upstream listings."""
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

FetchPage = Callable[[Any], Awaitable[Optional[list]]]


def cursor_pages(
    fetch_page: FetchPage,
    first_cursor: Any,
    next_cursor: Callable[[Any, list], Any],
    is_last: Optional[Callable[[list], bool]] = None,
) -> Callable[[], AsyncIterator[list]]:
    """Build a restartable page sequence.

    Returns a factory; every call yields a fresh async iterator that walks
    the cursor from ``first_cursor``. Pages are fetched one at a time, each
    cursor computed from the page before it. The walk ends when a fetch
    returns None or an empty page, when ``is_last(page)`` is true (that page
    is still yielded), or when ``next_cursor(cursor, page)`` returns None.
    """

    async def walk() -> AsyncIterator[list]:
        cursor = first_cursor
        while True:
            page = await fetch_page(cursor)
            if not page:
                return
            yield page
            if is_last is not None and is_last(page):
                return
            cursor = next_cursor(cursor, page)
            if cursor is None:
                return

    return walk


async def collect(pages: AsyncIterator[list]) -> list:
    items = []
    async for page in pages:
        items.extend(page)
    return items
