"""Remote favorites sources and registry."""

from .base import FavoritesSource
from .e621_source import E621Source, parse_post
from .registry import (
    create_source,
    register_source,
    registered_source_types,
    resolve_credentials,
)

__all__ = [
    "FavoritesSource",
    "E621Source",
    "create_source",
    "parse_post",
    "register_source",
    "registered_source_types",
    "resolve_credentials",
]
