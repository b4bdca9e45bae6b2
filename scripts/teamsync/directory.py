"""Microsoft Graph team directory client: teams, members, membership changes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests

from scripts.teamsync.auth import AuthContext, Credential, establish_session
from scripts.teamsync.config import GraphConfig
from scripts.teamsync.exceptions import (
    DirectoryAPIError,
    DirectoryTransportError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ThrottledError,
)
from scripts.teamsync.models import (
    AddMemberRequest,
    Member,
    RemoveMemberRequest,
    Role,
    Team,
)

logger = logging.getLogger("teamsync.directory")

_MEMBER_ODATA_TYPE = "#microsoft.graph.aadUserConversationMember"
_THROTTLE_STATUSES = (429, 503)


def _roles_for(role: Role) -> list[str]:
    if role is Role.OWNER:
        return ["owner"]
    if role is Role.GUEST:
        return ["guest"]
    return []


def _member_from_payload(data: dict) -> Member:
    roles = [r.lower() for r in data.get("roles") or []]
    if "owner" in roles:
        role = Role.OWNER
    elif "guest" in roles:
        role = Role.GUEST
    else:
        role = Role.MEMBER
    return Member(
        user=data.get("email") or data.get("userId") or "",
        role=role,
        membership_id=data.get("id", ""),
        user_id=data.get("userId") or "",
    )


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or ""
    return resp.text[:200]


class TeamDirectoryClient:
    """Thin wrapper around the Graph teams endpoints.

    Errors surface as DirectoryError subclasses; a team that does not
    resolve by name is returned as None rather than raised.
    """

    def __init__(
        self,
        auth: AuthContext,
        config: GraphConfig,
        credential: Optional[Credential] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._auth = auth
        self._config = config
        self._credential = credential
        self._base = config.api_base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})

    @property
    def auth(self) -> AuthContext:
        return self._auth

    def _ensure_authenticated(self) -> None:
        """Re-establish the session when the token is about to expire."""
        if self._credential is None or not self._auth.is_expired():
            return
        logger.info("Access token expiring, re-establishing session")
        self._auth = establish_session(
            self._credential,
            self._auth.platform,
            authority=self._config.authority,
            timeout_s=self._config.timeout_s,
        )

    # ------------------------------------------------------------------
    # HTTP / pagination / throttling helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _rate_limit_sleep(
        attempt: int, retry_after: Optional[str] = None, base_seconds: float = 1.0
    ) -> None:
        """Honour Retry-After when present, else exponential backoff."""
        try:
            delay = float(retry_after) if retry_after else base_seconds * (2 ** attempt)
        except ValueError:
            delay = base_seconds * (2 ** attempt)
        delay = min(delay, 60.0)  # cap at 60s
        logger.warning("Throttled, sleeping %.1fs (attempt %d)", delay, attempt)
        time.sleep(delay)

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempt = 0
        while True:
            self._ensure_authenticated()
            headers = {"Authorization": f"Bearer {self._auth.access_token}"}
            try:
                resp = self._session.request(
                    method, url, headers=headers, timeout=self._config.timeout_s, **kwargs
                )
            except requests.RequestException as exc:
                raise DirectoryTransportError(f"{method} {url} failed: {exc}") from exc

            if resp.status_code in _THROTTLE_STATUSES:
                if attempt >= self._config.max_retries:
                    raise ThrottledError(
                        resp.status_code, "still throttled after retries", url
                    )
                self._rate_limit_sleep(attempt, resp.headers.get("Retry-After"))
                attempt += 1
                continue
            if resp.status_code in (401, 403):
                raise PermissionDeniedError(resp.status_code, _error_message(resp), url)
            if resp.status_code == 404:
                raise ResourceNotFoundError(resp.status_code, _error_message(resp), url)
            if resp.status_code >= 400:
                raise DirectoryAPIError(resp.status_code, _error_message(resp), url)
            return resp

    def _get_paginated(self, url: str, params: Optional[dict] = None) -> list[dict]:
        """Fetch all pages by following @odata.nextLink."""
        results: list[dict] = []
        while url:
            resp = self._request("GET", url, params=params)
            try:
                data = resp.json()
            except ValueError as exc:
                raise DirectoryAPIError(
                    resp.status_code, f"response is not JSON: {exc}", url
                ) from exc
            if not isinstance(data, dict):
                raise DirectoryAPIError(resp.status_code, "unexpected response shape", url)
            results.extend(data.get("value", []))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink", "")
            params = None
        return results

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def resolve_team(self, name: str) -> Optional[Team]:
        """Look a team up by display name. Returns None when nothing matches."""
        escaped = name.replace("'", "''")
        teams = self._get_paginated(
            f"{self._base}/teams",
            params={"$filter": f"displayName eq '{escaped}'", "$select": "id,displayName"},
        )
        matches = [t for t in teams if t.get("displayName") == name]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "%d teams share the display name, using the first", len(matches),
                extra={"team": name},
            )
        return Team(display_name=matches[0]["displayName"], group_id=matches[0]["id"])

    def list_teams(self) -> list[Team]:
        teams = self._get_paginated(
            f"{self._base}/teams", params={"$select": "id,displayName"}
        )
        return [
            Team(display_name=t.get("displayName", ""), group_id=t["id"])
            for t in teams
            if t.get("id")
        ]

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def list_members(self, group_id: str) -> list[Member]:
        members = self._get_paginated(f"{self._base}/teams/{group_id}/members")
        return [_member_from_payload(m) for m in members]

    def resolve_user_id(self, user: str) -> Optional[str]:
        """Directory object id for a UPN, object id or mail address. None when unknown."""
        url = f"{self._base}/users/{user}"
        try:
            resp = self._request("GET", url, params={"$select": "id"})
        except ResourceNotFoundError:
            resp = None
        if resp is not None:
            try:
                data = resp.json()
            except ValueError as exc:
                raise DirectoryAPIError(
                    resp.status_code, f"response is not JSON: {exc}", url
                ) from exc
            if not isinstance(data, dict):
                return None
            return data.get("id") or None

        # mail and UPN differ for this account
        escaped = user.replace("'", "''")
        users = self._get_paginated(
            f"{self._base}/users",
            params={"$filter": f"mail eq '{escaped}'", "$select": "id"},
        )
        return users[0].get("id") if users else None

    def _find_member(self, group_id: str, user: str) -> tuple[Optional[Member], Optional[str]]:
        """Locate the user's membership, returning it with the user's directory id."""
        members = self.list_members(group_id)
        for member in members:
            if member.matches(user):
                return member, member.user_id or None
        user_id = self.resolve_user_id(user)
        if user_id:
            for member in members:
                if member.matches(user, user_id):
                    return member, user_id
        return None, user_id

    def add_member(self, request: AddMemberRequest) -> None:
        """Add the user with the role, or update the role of an existing member."""
        existing, user_id = self._find_member(request.group_id, request.user)
        payload = {"@odata.type": _MEMBER_ODATA_TYPE, "roles": _roles_for(request.role)}

        if existing is None:
            payload["user@odata.bind"] = f"{self._base}/users('{user_id or request.user}')"
            self._request("POST", f"{self._base}/teams/{request.group_id}/members", json=payload)
            logger.info("Added member as %s", request.role.value, extra={"user": request.user})
        elif existing.role is not request.role:
            self._request(
                "PATCH",
                f"{self._base}/teams/{request.group_id}/members/{existing.membership_id}",
                json=payload,
            )
            logger.info(
                "Changed member role %s -> %s", existing.role.value, request.role.value,
                extra={"user": request.user},
            )
        else:
            logger.debug("Already a member with the requested role", extra={"user": request.user})

    def remove_member(self, request: RemoveMemberRequest) -> None:
        """Remove the membership, or with role=Owner only revoke ownership."""
        existing, _ = self._find_member(request.group_id, request.user)
        if existing is None:
            logger.debug("Not a member, nothing to remove", extra={"user": request.user})
            return

        url = f"{self._base}/teams/{request.group_id}/members/{existing.membership_id}"
        if request.role is Role.OWNER:
            if existing.role is not Role.OWNER:
                return
            self._request(
                "PATCH", url, json={"@odata.type": _MEMBER_ODATA_TYPE, "roles": []}
            )
            logger.info("Revoked ownership", extra={"user": request.user})
            return

        self._request("DELETE", url)
        logger.info("Removed member", extra={"user": request.user})


@dataclass(frozen=True)
class GraphDirectoryFactory:
    """Picklable recipe for a freshly authenticated client.

    Workers call the factory themselves so that no session state crosses
    the worker boundary.
    """

    credential: Credential
    config: GraphConfig
    platform: str = "MicrosoftTeams"

    @classmethod
    def from_config(cls, config: GraphConfig) -> "GraphDirectoryFactory":
        credential = Credential(
            tenant=config.tenant,
            client_id=config.client_id,
            client_secret=config.client_secret,
            principal=config.principal,
        )
        return cls(credential=credential, config=config)

    def __call__(self) -> TeamDirectoryClient:
        auth = establish_session(
            self.credential,
            self.platform,
            authority=self.config.authority,
            timeout_s=self.config.timeout_s,
        )
        return TeamDirectoryClient(auth, self.config, credential=self.credential)
