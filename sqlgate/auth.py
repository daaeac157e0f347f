"""Per-environment authentication: credentials and Azure AD access tokens."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import InteractiveBrowserCredential
from psycopg.conninfo import make_conninfo

from sqlgate.environments import AuthMode, EnvironmentConfig
from sqlgate.utils.errors import AuthenticationFailed

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_on: Optional[datetime] = None


@dataclass(frozen=True)
class ConnectionParams:
    """Everything needed to open a pool for one environment."""

    environment: str
    conninfo: str
    timeout: float
    expires_on: Optional[datetime] = None


class AzureTokenProvider:
    """Acquires Azure AD access tokens with an interactive browser sign-in.

    The credential caches tokens between calls, so a reconnect shortly before
    expiry normally refreshes silently without a new prompt.
    """

    def __init__(self, credential=None):
        self._credential = credential

    @property
    def credential(self):
        if self._credential is None:
            self._credential = InteractiveBrowserCredential(
                redirect_uri="http://localhost"
            )
        return self._credential

    async def get_token(self, scope: str) -> AccessToken:
        # get_token blocks on the browser round-trip
        raw = await asyncio.to_thread(self.credential.get_token, scope)
        expires_on = (
            datetime.fromtimestamp(raw.expires_on, tz=timezone.utc)
            if raw.expires_on
            else None
        )
        return AccessToken(token=raw.token, expires_on=expires_on)


async def build_connection_params(
    env: EnvironmentConfig,
    token_provider: AzureTokenProvider,
    now: Callable[[], datetime],
) -> ConnectionParams:
    """Build auth-specific connection parameters for an environment.

    - sql: username/password as configured
    - windows: domain-qualified username/password, GSSAPI encryption preferred
    - aad: interactive Azure AD token used as the password; expiry recorded
    """
    base = {
        "host": env.server,
        "port": env.port,
        "dbname": env.database or "postgres",
        "sslmode": env.ssl_mode,
        "connect_timeout": env.connection_timeout,
        "application_name": "sqlgate",
    }

    if env.auth_mode in (AuthMode.SQL, AuthMode.WINDOWS):
        if not env.username or not env.password:
            raise AuthenticationFailed(
                f"Environment '{env.name}' requires username and password "
                f"for {env.auth_mode.value} auth"
            )
        user = env.username
        extra = {}
        if env.auth_mode == AuthMode.WINDOWS:
            if env.domain:
                user = f"{env.username}@{env.domain}"
            extra["gssencmode"] = "prefer"
        return ConnectionParams(
            environment=env.name,
            conninfo=make_conninfo(**base, user=user, password=env.password, **extra),
            timeout=env.connection_timeout,
        )

    if not env.username:
        raise AuthenticationFailed(
            f"Environment '{env.name}' requires username (the Azure AD principal) "
            "for aad auth"
        )
    try:
        access_token = await token_provider.get_token(env.token_scope)
    except ClientAuthenticationError as e:
        raise AuthenticationFailed(
            f"Failed to acquire Azure AD token for environment '{env.name}': {e}"
        ) from e

    if not access_token.token:
        raise AuthenticationFailed(
            f"Failed to acquire Azure AD token for environment '{env.name}'"
        )

    expires_on = access_token.expires_on or now() + DEFAULT_TOKEN_LIFETIME
    logger.info(f"Acquired Azure AD token for '{env.name}' (expires {expires_on.isoformat()})")
    return ConnectionParams(
        environment=env.name,
        conninfo=make_conninfo(**base, user=env.username, password=access_token.token),
        timeout=env.connection_timeout,
        expires_on=expires_on,
    )
