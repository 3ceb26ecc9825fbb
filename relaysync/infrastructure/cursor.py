"""
Keyset pagination over the relay table.

Intent:
- Stream an unbounded relay set without loading it into memory.
- Page by id (`id > after_id ORDER BY id LIMIT n`) rather than OFFSET, so each
  fetch costs the same regardless of how deep into the table it is.
- Refuse to continue when the store breaks the ordering invariant.
"""

from __future__ import annotations

from typing import AsyncIterator, List, Protocol, Sequence

from relaysync.domain.models import RelayRecord
from relaysync.errors import DataIntegrityError
from relaysync.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_PAGE_SIZE = 500


class RelayPageSource(Protocol):
    async def get_relays(
        self, include_disabled: bool, after_id: int, page_size: int
    ) -> Sequence[RelayRecord]: ...


def _check_page(
    page: Sequence[RelayRecord], after_id: int, page_size: int, include_disabled: bool
) -> None:
    if len(page) > page_size:
        raise DataIntegrityError(f"Store returned {len(page)} relays for a page of {page_size}")
    previous = after_id
    for relay in page:
        if relay.id <= previous:
            raise DataIntegrityError(
                f"Relay id {relay.id} does not follow {previous}; ids must be strictly increasing"
            )
        if not include_disabled and not relay.active:
            raise DataIntegrityError(f"Relay {relay.id} is disabled or deleted but was not filtered")
        previous = relay.id


async def next_page(
    source: RelayPageSource, after_id: int, page_size: int, include_disabled: bool
) -> List[RelayRecord]:
    """
    Fetch the relays with id > after_id, ascending, at most page_size of them.

    An empty list means the table is exhausted.

    Raises
    ------
    ValueError
        If page_size is not positive.
    DataIntegrityError
        If the page breaks the ordering or filtering contract.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    page = list(await source.get_relays(include_disabled, after_id, page_size))
    try:
        _check_page(page, after_id, page_size, include_disabled)
    except DataIntegrityError:
        log.exception("Relay page failed integrity checks", extra={"after_id": after_id})
        raise
    return page


class RelayCursor:
    """
    Walks every relay matching the filter, one page at a time.

    The cursor holds configuration only; iteration state lives in the
    generator, so independent iterations may run concurrently.
    """

    def __init__(
        self,
        source: RelayPageSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        include_disabled: bool = False,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._source = source
        self.page_size = page_size
        self.include_disabled = include_disabled
        self.calls = 0

    async def pages(self) -> AsyncIterator[List[RelayRecord]]:
        """Yield non-empty pages until the store returns an empty one."""
        after_id = 0
        self.calls = 0
        while True:
            page = await next_page(self._source, after_id, self.page_size, self.include_disabled)
            self.calls += 1
            if not page:
                log.debug("Relay cursor exhausted", extra={"calls": self.calls, "after_id": after_id})
                return
            yield page
            after_id = page[-1].id

    async def records(self) -> AsyncIterator[RelayRecord]:
        async for page in self.pages():
            for relay in page:
                yield relay


__all__ = ["DEFAULT_PAGE_SIZE", "RelayCursor", "RelayPageSource", "next_page"]
