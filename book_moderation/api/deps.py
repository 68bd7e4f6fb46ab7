"""
Shared FastAPI dependencies: API key check, registry and pipeline wiring.

Authentication is optional. With ``settings.api_key`` set, every request must send
    Authorization: Bearer <api_key>
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from book_moderation.config import settings
from book_moderation.moderation.pipeline import ModerationPipeline, ProviderFactory
from book_moderation.providers import get_provider
from book_moderation.registry import RunRegistry, SqlRunRegistry

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)
_registry: Optional[RunRegistry] = None


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
    if not settings.api_key:
        return
    token = credentials.credentials if credentials is not None else ""
    if not hmac.compare_digest(token.encode(), settings.api_key.encode()):
        logger.warning(f"Rejected {request.method} {request.url.path}: invalid or missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_registry() -> RunRegistry:
    """Process-wide registry; one instance so per-key write locks are shared."""
    global _registry
    if _registry is None:
        _registry = SqlRunRegistry()
    return _registry


def get_provider_factory() -> ProviderFactory:
    return get_provider


def get_pipeline(
    registry: RunRegistry = Depends(get_registry),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> ModerationPipeline:
    return ModerationPipeline(registry, provider_factory=provider_factory)
