"""
Token Lifecycle

Owns a connector's TokenState and serializes renewal:
- Lock-free read of a valid token
- Single-flight refresh: concurrent callers share one grant request
- Refresh failure clears state and falls back to full authentication once
"""

from typing import Optional
import asyncio

import structlog

from fhirbridge.integrations.auth import AuthenticationStrategy
from fhirbridge.integrations.errors import AuthError, ConfigurationError
from fhirbridge.integrations.models import DEFAULT_EXPIRY_BUFFER_SECONDS, TokenState

logger = structlog.get_logger(__name__)


class TokenManager:
    """
    Token state holder for one connector.

    The state is replaced in a single assignment after a successful grant,
    so a cancelled or failed renewal never leaves a half-written token.
    """

    def __init__(
        self,
        strategy: AuthenticationStrategy,
        buffer_seconds: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
    ):
        self.strategy = strategy
        self.buffer_seconds = buffer_seconds
        self._state = TokenState()
        self._lock = asyncio.Lock()

    @property
    def vendor_id(self) -> str:
        return self.strategy.config.vendor_id

    @property
    def state(self) -> TokenState:
        return self._state

    def is_expired(self) -> bool:
        return self._state.is_expired(self.buffer_seconds)

    def clear(self) -> None:
        """Drop all token state, forcing full authentication on next use."""
        self._state = TokenState()

    async def get_token(self) -> str:
        """
        Return a valid access token, renewing it if expired.

        Raises:
            AuthError: If renewal fails
        """
        state = self._state
        if not state.is_expired(self.buffer_seconds):
            return state.access_token
        return await self._renew(force=False, rejected_token=None)

    async def force_refresh(self, rejected_token: Optional[str]) -> str:
        """
        Renew regardless of expiry after the vendor rejected a token.

        If another caller already replaced the rejected token, the newer
        token is returned without another grant request.

        Raises:
            AuthError: If renewal fails
        """
        return await self._renew(force=True, rejected_token=rejected_token)

    async def _renew(self, force: bool, rejected_token: Optional[str]) -> str:
        async with self._lock:
            current = self._state
            if not current.is_expired(self.buffer_seconds):
                if not force or current.access_token != rejected_token:
                    return current.access_token

            try:
                new_state = await self._obtain(current)
            except AuthError:
                self._state = TokenState()
                raise

            self._state = new_state
            return new_state.access_token

    async def _obtain(self, current: TokenState) -> TokenState:
        if not current.refresh_token:
            return await self.strategy.authenticate()

        try:
            return await self.strategy.refresh(current)
        except ConfigurationError:
            raise
        except AuthError as exc:
            logger.warning(
                "Token refresh failed, re-authenticating",
                vendor=self.vendor_id,
                kind=exc.kind.value,
                status=exc.status,
            )
            self._state = TokenState()
            return await self.strategy.authenticate()
