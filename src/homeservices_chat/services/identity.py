"""Identity loading with a last-known-good local cache."""

from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from ..domain.models import Identity
from ..errors import ApiError, IdentityLoadError
from .api import ChatApiClient

logger = structlog.get_logger()


class IdentityCache:
    """Persists the last identity the backend confirmed as a small JSON file.

    With no path configured the cache lives in memory for the process only.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._identity: Optional[Identity] = None

    def load(self) -> Optional[Identity]:
        if self._identity is not None or self.path is None:
            return self._identity
        try:
            self._identity = Identity.model_validate_json(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning("identity_cache_unreadable", path=str(self.path), error=str(e))
            return None
        return self._identity

    def save(self, identity: Identity) -> None:
        self._identity = identity
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(identity.model_dump_json(), encoding="utf-8")
        except OSError as e:
            logger.warning("identity_cache_write_failed", path=str(self.path), error=str(e))


async def load_identity(api: ChatApiClient, cache: IdentityCache) -> Identity:
    """Load the signed-in identity, falling back to the cached one.

    Raises IdentityLoadError when neither the backend nor the cache has it.
    """
    try:
        identity = await api.get_me()
    except ApiError as e:
        cached = cache.load()
        if cached is None:
            logger.error("identity_load_failed", error=str(e))
            raise IdentityLoadError("Unable to load identity") from e
        logger.warning("identity_cache_fallback", user_id=cached.user_id, error=str(e))
        return cached

    cache.save(identity)
    logger.info("identity_loaded", user_id=identity.user_id, role=identity.role)
    return identity
