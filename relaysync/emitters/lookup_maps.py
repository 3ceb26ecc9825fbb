"""
Lookup-map emitters for relaysync.

Two modes exist for the alias map:

- live query (default): the map file holds the store credentials and a query
  template, and Postfix asks the store at delivery time;
- pre-rendered: every matching relay is streamed through a RelayCursor and
  written as one `alias   destination` line, for a `hash:` table built with
  postmap.

The domain map is always a live query.
"""

from __future__ import annotations

from typing import AsyncIterator, List

from relaysync.domain.models import ConnectionDescriptor, RelayRecord, SyncSnapshot
from relaysync.emitters.abstract import AbstractConfigEmitter, iterate
from relaysync.infrastructure.cursor import DEFAULT_PAGE_SIZE, RelayCursor, RelayPageSource
from relaysync.infrastructure.writer import DEFAULT_HIGH_WATER_MARK

DOMAIN_QUERY = "SELECT name FROM domains WHERE name = '%s'"
ALIAS_QUERY = (
    "SELECT destination FROM relays "
    "WHERE alias = '%s' AND enabled = TRUE AND deleted = FALSE"
)


def render_lookup_map(connection: ConnectionDescriptor, query: str) -> List[str]:
    """Connection parameters followed by the single query template line."""
    return [
        f"user = {connection.user}",
        f"password = {connection.password}",
        f"hosts = {connection.hosts}",
        f"dbname = {connection.database}",
        f"query = {query}",
    ]


def render_alias_line(relay: RelayRecord) -> str:
    return f"{relay.alias}   {relay.destination}"


async def render_alias_lines(cursor: RelayCursor) -> AsyncIterator[str]:
    async for relay in cursor.records():
        yield render_alias_line(relay)


class DomainMapEmitter(AbstractConfigEmitter):
    """
    Writes the virtual domain lookup map.
    """

    name: str = "domains_map"
    description: str = "Live-query map of the virtual domains Postfix accepts."

    def __init__(self, snapshot: SyncSnapshot, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        super().__init__(snapshot.domains_map_path, high_water_mark=high_water_mark)
        self.snapshot = snapshot

    def lines(self) -> AsyncIterator[str]:
        return iterate(render_lookup_map(self.snapshot.connection, DOMAIN_QUERY))


class AliasMapEmitter(AbstractConfigEmitter):
    """
    Writes the live-query alias lookup map.
    """

    name: str = "alias_map"
    description: str = "Live-query map from relay alias to destination."

    def __init__(self, snapshot: SyncSnapshot, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        super().__init__(snapshot.alias_map_path, high_water_mark=high_water_mark)
        self.snapshot = snapshot

    def lines(self) -> AsyncIterator[str]:
        return iterate(render_lookup_map(self.snapshot.connection, ALIAS_QUERY))


class PrerenderedAliasMapEmitter(AbstractConfigEmitter):
    """
    Streams every matching relay into a static alias table.

    Memory use is bounded by one page of relays plus the writer's high-water
    mark, whatever the table size.
    """

    name: str = "alias_map"
    description: str = "Pre-rendered alias table, one `alias   destination` line per relay."

    def __init__(
        self,
        snapshot: SyncSnapshot,
        source: RelayPageSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
    ) -> None:
        super().__init__(snapshot.alias_map_path, high_water_mark=high_water_mark)
        self.snapshot = snapshot
        self.cursor = RelayCursor(
            source, page_size=page_size, include_disabled=snapshot.include_disabled
        )

    def lines(self) -> AsyncIterator[str]:
        return render_alias_lines(self.cursor)


__all__ = [
    "ALIAS_QUERY",
    "DOMAIN_QUERY",
    "AliasMapEmitter",
    "DomainMapEmitter",
    "PrerenderedAliasMapEmitter",
    "render_alias_line",
    "render_alias_lines",
    "render_lookup_map",
]
