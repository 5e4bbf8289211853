from __future__ import annotations

import logging
import os
from typing import Callable, Optional, Tuple

from favorites_mirror.config import ApiSettings
from favorites_mirror.ratelimit import RateLimiter

from .base import FavoritesSource

logger = logging.getLogger(__name__)

Credentials = Tuple[str, str]
SourceFactory = Callable[[ApiSettings, RateLimiter, Optional[Credentials]], FavoritesSource]

_REGISTRY: dict[str, SourceFactory] = {}


class SourceRegistrationError(ValueError):
    """Raised when an unknown source type is used."""


def register_source(source_type: str) -> Callable[[SourceFactory], SourceFactory]:
    def decorator(factory: SourceFactory) -> SourceFactory:
        _REGISTRY[source_type] = factory
        return factory

    return decorator


def resolve_credentials(settings: ApiSettings) -> Credentials | None:
    """Read the login/API-key pair from the environment variables named in config.

    Both halves must be present; a lone login or key is ignored with a warning.
    """
    login = os.getenv(settings.login_env_var, "").strip()
    api_key = os.getenv(settings.api_key_env_var, "").strip()
    if login and api_key:
        logger.debug("Using API credentials from %s", settings.login_env_var)
        return login, api_key
    if login or api_key:
        missing = settings.api_key_env_var if login else settings.login_env_var
        logger.warning("%s is not set; continuing without API credentials", missing)
    return None


def create_source(settings: ApiSettings, limiter: RateLimiter) -> FavoritesSource:
    factory = _REGISTRY.get(settings.type)
    if factory is None:
        available = ", ".join(sorted(_REGISTRY)) or "none"
        raise SourceRegistrationError(
            f"Unknown source type '{settings.type}'. Registered source types: {available}"
        )
    return factory(settings, limiter, resolve_credentials(settings))


def registered_source_types() -> list[str]:
    return sorted(_REGISTRY)
