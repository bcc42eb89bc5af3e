"""Per-operation integration permission checks."""
import logging
from typing import Dict, List

from database.repositories.integration_repo import IntegrationRepository

logger = logging.getLogger(__name__)


class ScopeError(PermissionError):
    """The integration is disconnected or lacks the scope an operation needs."""
    def __init__(self, message: str, *, provider: str, scope: str):
        super().__init__(message)
        self.provider = provider
        self.scope = scope


class ScopeGuard:
    """Checks integration scopes (read/write/delete) before provider calls."""

    def __init__(self, integration_repo: IntegrationRepository):
        self.integration_repo = integration_repo

    async def granted_scopes(self, provider: str) -> List[str]:
        """Scopes of a connected integration; empty when disconnected or unreadable."""
        try:
            connection = await self.integration_repo.get_connection(provider)
        except Exception as e:
            logger.warning(f"Could not read {provider} connection, treating as no scopes: {e}")
            return []
        if connection.get("status") != "connected":
            return []
        return list(connection.get("granted_scopes") or [])

    async def granted_scope_map(self, providers: List[str]) -> Dict[str, List[str]]:
        return {provider: await self.granted_scopes(provider) for provider in providers}

    async def has_scope(self, provider: str, scope: str) -> bool:
        return scope in await self.granted_scopes(provider)

    async def assert_scope(self, provider: str, scope: str) -> None:
        """Raise ScopeError unless the provider is connected with the scope."""
        connection = await self.integration_repo.get_connection(provider)
        if connection.get("status") != "connected":
            raise ScopeError(
                f"{provider} integration is not connected.",
                provider=provider,
                scope=scope,
            )
        if scope not in (connection.get("granted_scopes") or []):
            raise ScopeError(
                f'{provider} does not have "{scope}" permission. '
                "Go to Settings → Integrations to grant it.",
                provider=provider,
                scope=scope,
            )
