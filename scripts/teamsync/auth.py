"""Session establishment against the Microsoft identity platform.

Only the client-credentials grant is supported, through azure-identity's
ClientSecretCredential. Every worker calls establish_session() itself; an
AuthContext is a plain value and is never shared through module state.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential

from scripts.teamsync.exceptions import AuthenticationError

logger = logging.getLogger("teamsync.auth")

PLATFORM_SCOPES = {
    "MicrosoftTeams": "https://graph.microsoft.com/.default",
    "MicrosoftGraph": "https://graph.microsoft.com/.default",
}

DEFAULT_AUTHORITY = "https://login.microsoftonline.com"

_GUID_RE = re.compile(r"^[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}$")


@dataclass(frozen=True)
class Credential:
    tenant: str  # tenant domain (contoso.onmicrosoft.com) or tenant GUID
    client_id: str
    client_secret: str
    principal: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credential(tenant={self.tenant!r}, client_id={self.client_id!r})"


@dataclass(frozen=True)
class AuthContext:
    access_token: str
    expires_at: float
    tenant: str
    organization: Optional[str]
    platform: str

    def is_expired(self, skew_s: float = 60.0) -> bool:
        return time.time() >= self.expires_at - skew_s

    def __repr__(self) -> str:
        return f"AuthContext(tenant={self.tenant!r}, platform={self.platform!r})"


def organization_from_principal(value: Optional[str]) -> Optional[str]:
    """Short organization name from a UPN or tenant domain.

    ``admin@contoso.onmicrosoft.com`` and ``contoso.onmicrosoft.com`` both
    give ``contoso``. Tenant GUIDs carry no organization name.
    """
    if not value:
        return None
    domain = value.rsplit("@", 1)[-1].strip()
    if not domain or _GUID_RE.match(domain) or "." not in domain:
        return None
    return domain.split(".", 1)[0] or None


def establish_session(
    credential: Credential,
    platform: str = "MicrosoftTeams",
    authority: str = DEFAULT_AUTHORITY,
    timeout_s: float = 30.0,
) -> AuthContext:
    """Acquire an app-only token for the platform and wrap it in an AuthContext."""
    scope = PLATFORM_SCOPES.get(platform)
    if scope is None:
        raise ValueError(f"Unsupported platform '{platform}'")

    client_credential = ClientSecretCredential(
        tenant_id=credential.tenant,
        client_id=credential.client_id,
        client_secret=credential.client_secret,
        authority=authority,
        connection_timeout=timeout_s,
    )
    try:
        token = client_credential.get_token(scope)
    except AzureError as exc:
        raise AuthenticationError(
            f"Token request for tenant {credential.tenant} failed: {exc}"
        ) from exc
    finally:
        client_credential.close()

    organization = organization_from_principal(credential.principal) or organization_from_principal(
        credential.tenant
    )
    logger.debug("Session established for tenant %s", credential.tenant)
    return AuthContext(
        access_token=token.token,
        expires_at=float(token.expires_on),
        tenant=credential.tenant,
        organization=organization,
        platform=platform,
    )
