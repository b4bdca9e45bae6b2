"""Membership records, resolved teams and directory request structs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    GUEST = "Guest"
    MEMBER = "Member"
    OWNER = "Owner"


class Ensure(str, Enum):
    PRESENT = "Present"
    ABSENT = "Absent"


@dataclass(frozen=True)
class Team:
    display_name: str
    group_id: str


@dataclass(frozen=True)
class Member:
    """One membership entry as returned by the directory listing.

    ``user`` is the member's mail address (or its directory id when the
    account has no mailbox); ``user_id`` is the directory object id.
    """

    user: str
    role: Role
    membership_id: str = ""
    user_id: str = ""

    def matches(self, user: str, user_id: Optional[str] = None) -> bool:
        """Whether ``user`` names this member. Principals compare case-insensitively."""
        wanted = (user or "").lower()
        if wanted and wanted in (self.user.lower(), self.user_id.lower()):
            return True
        return bool(user_id and self.user_id and user_id.lower() == self.user_id.lower())


@dataclass(frozen=True)
class MembershipRecord:
    """One principal's relationship to one team.

    ``role`` is None when the caller did not set it. ``group_id`` is never
    supplied by callers; it is filled in when the team resolves.
    """

    team_name: str
    user: Optional[str]
    ensure: Ensure = Ensure.PRESENT
    role: Optional[Role] = None
    group_id: Optional[str] = None

    @property
    def effective_role(self) -> Role:
        return self.role or Role.MEMBER

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_name": self.team_name,
            "user": self.user,
            "role": self.role.value if self.role else None,
            "ensure": self.ensure.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MembershipRecord":
        """Build a desired record from a config entry. Unknown keys are ignored."""
        team_name = data.get("team_name") or data.get("TeamName")
        user = data.get("user") or data.get("User")
        if not team_name or not user:
            raise ValueError(f"Membership entry needs team_name and user: {data!r}")
        role = data.get("role", data.get("Role"))
        ensure = data.get("ensure", data.get("Ensure")) or Ensure.PRESENT.value
        return cls(
            team_name=team_name,
            user=user,
            role=Role(role) if role else None,
            ensure=Ensure(ensure),
        )


@dataclass(frozen=True)
class AddMemberRequest:
    group_id: str
    user: str
    role: Role = Role.MEMBER


@dataclass(frozen=True)
class RemoveMemberRequest:
    group_id: str
    user: str
    role: Optional[Role] = None  # None = drop the membership entirely
