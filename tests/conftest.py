"""Pytest shared fixtures: an in-memory team directory."""
import time
from dataclasses import replace
from typing import Optional

import pytest

from scripts.teamsync.auth import AuthContext
from scripts.teamsync.exceptions import PermissionDeniedError, ResourceNotFoundError
from scripts.teamsync.models import (
    AddMemberRequest,
    Member,
    RemoveMemberRequest,
    Role,
    Team,
)


class FakeDirectoryClient:
    """Directory client double with the same idempotent add/remove semantics."""

    def __init__(self, organization: Optional[str] = "contoso"):
        self.auth = AuthContext(
            access_token="token",
            expires_at=time.time() + 3600,
            tenant="contoso.onmicrosoft.com",
            organization=organization,
            platform="MicrosoftTeams",
        )
        self.teams: dict[str, Team] = {}
        self.members: dict[str, list[Member]] = {}
        self.denied_teams: set[str] = set()
        self.denied_lookups: set[str] = set()
        self.failures: dict[str, Exception] = {}
        self.user_ids: dict[str, str] = {}
        self.calls: list[tuple] = []
        self.mutations = 0

    def add_team(self, name: str, group_id: str, members=()) -> Team:
        team = Team(display_name=name, group_id=group_id)
        self.teams[group_id] = team
        self.members[group_id] = [
            Member(
                user=entry[0],
                role=entry[1],
                membership_id=f"{group_id}:{entry[0]}",
                user_id=entry[2] if len(entry) > 2 else "",
            )
            for entry in members
        ]
        return team

    def resolve_team(self, name: str) -> Optional[Team]:
        self.calls.append(("resolve_team", name))
        if name in self.denied_lookups:
            raise PermissionDeniedError(403, "Forbidden", "/teams")
        for team in self.teams.values():
            if team.display_name == name:
                return team
        return None

    def list_teams(self) -> list[Team]:
        self.calls.append(("list_teams",))
        return list(self.teams.values())

    def list_members(self, group_id: str) -> list[Member]:
        self.calls.append(("list_members", group_id))
        if group_id in self.failures:
            raise self.failures[group_id]
        if group_id in self.denied_teams:
            raise PermissionDeniedError(403, "Forbidden", f"/teams/{group_id}/members")
        if group_id not in self.members:
            raise ResourceNotFoundError(404, "Not found", f"/teams/{group_id}/members")
        return list(self.members[group_id])

    def resolve_user_id(self, user: str) -> Optional[str]:
        self.calls.append(("resolve_user_id", user))
        return self.user_ids.get(user.lower())

    def _find(self, group_id: str, user: str) -> Optional[Member]:
        roster = self.members.get(group_id, [])
        for member in roster:
            if member.matches(user):
                return member
        user_id = self.user_ids.get(user.lower())
        for member in roster:
            if member.matches(user, user_id):
                return member
        return None

    def add_member(self, request: AddMemberRequest) -> None:
        self.calls.append(("add_member", request))
        existing = self._find(request.group_id, request.user)
        if existing is not None and existing.role is request.role:
            return
        roster = [m for m in self.members[request.group_id] if m is not existing]
        if existing is not None:
            roster.append(replace(existing, role=request.role))
        else:
            roster.append(
                Member(
                    request.user,
                    request.role,
                    f"{request.group_id}:{request.user}",
                    self.user_ids.get(request.user.lower(), ""),
                )
            )
        self.members[request.group_id] = roster
        self.mutations += 1

    def remove_member(self, request: RemoveMemberRequest) -> None:
        self.calls.append(("remove_member", request))
        existing = self._find(request.group_id, request.user)
        if existing is None:
            return
        roster = [m for m in self.members[request.group_id] if m is not existing]
        if request.role is Role.OWNER:
            if existing.role is not Role.OWNER:
                return
            roster.append(replace(existing, role=Role.MEMBER))
        self.members[request.group_id] = roster
        self.mutations += 1


@pytest.fixture
def directory():
    client = FakeDirectoryClient()
    client.add_team(
        "Sales",
        "g-sales",
        [
            ("alice@contoso.com", Role.OWNER),
            ("bob@contoso.com", Role.MEMBER),
            ("guest@fabrikam.com", Role.GUEST),
        ],
    )
    client.add_team("Engineering", "g-eng", [("carol@contoso.com", Role.MEMBER)])
    return client
