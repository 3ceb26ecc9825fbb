"""
Emitters package for relaysync.

Re-exports the emitter interfaces and the concrete emitters so downstream code
can import from `relaysync.emitters` directly.
"""

from relaysync.emitters.abstract import (
    AbstractConfigEmitter,
    ConfigEmitter,
    EmitterResult,
)
from relaysync.emitters.lookup_maps import (
    AliasMapEmitter,
    DomainMapEmitter,
    PrerenderedAliasMapEmitter,
    render_lookup_map,
)
from relaysync.emitters.main_cf import MainConfigEmitter, render_main_cf

__all__ = [
    # Abstracts
    "AbstractConfigEmitter",
    "ConfigEmitter",
    "EmitterResult",
    # Concrete emitters
    "AliasMapEmitter",
    "DomainMapEmitter",
    "MainConfigEmitter",
    "PrerenderedAliasMapEmitter",
    # Pure renderers
    "render_lookup_map",
    "render_main_cf",
]
