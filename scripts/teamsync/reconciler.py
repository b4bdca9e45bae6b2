"""Read / apply / test for a single team membership record."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from scripts.teamsync.exceptions import (
    PermissionDeniedError,
    ResourceNotFoundError,
    TeamNotFoundError,
)
from scripts.teamsync.models import (
    AddMemberRequest,
    Ensure,
    Member,
    MembershipRecord,
    RemoveMemberRequest,
    Role,
    Team,
)

logger = logging.getLogger("teamsync.reconciler")

COMPARED_FIELDS = ("ensure", "user", "role")


class MembershipReconciler:
    """Declarative convergence for one (team, user) membership.

    ``read`` never raises for a team that is missing or unreadable with the
    current credential; both are reported as an absent record. ``apply``
    propagates every directory error.
    """

    def __init__(self, client) -> None:
        self.client = client

    @staticmethod
    def _absent(desired: MembershipRecord, team: Optional[Team] = None) -> MembershipRecord:
        return MembershipRecord(
            team_name=desired.team_name,
            user=desired.user,
            ensure=Ensure.ABSENT,
            role=None,
            group_id=team.group_id if team else None,
        )

    @staticmethod
    def current_state(
        desired: MembershipRecord,
        team: Team,
        members: Sequence[Member],
        user_id: Optional[str] = None,
    ) -> MembershipRecord:
        """Normalize an already fetched member listing into a current record.

        A matched member is reported under the desired principal name, since
        the listing may key the same account by mail address or object id.
        """
        for member in members:
            if member.matches(desired.user, user_id):
                return MembershipRecord(
                    team_name=desired.team_name,
                    user=desired.user,
                    ensure=Ensure.PRESENT,
                    role=member.role,
                    group_id=team.group_id,
                )
        return MembershipReconciler._absent(desired, team)

    def _lookup_user_id(self, desired: MembershipRecord) -> Optional[str]:
        try:
            return self.client.resolve_user_id(desired.user)
        except (PermissionDeniedError, ResourceNotFoundError) as exc:
            logger.warning(
                "Cannot resolve user id: %s", exc,
                extra={"team": desired.team_name, "user": desired.user},
            )
            return None

    def read(self, desired: MembershipRecord) -> MembershipRecord:
        log_extra = {"team": desired.team_name, "user": desired.user}
        try:
            team = self.client.resolve_team(desired.team_name)
        except PermissionDeniedError as exc:
            logger.warning("Cannot resolve team, reporting absent: %s", exc, extra=log_extra)
            return self._absent(desired)
        if team is None:
            logger.info("Team not found, reporting absent", extra=log_extra)
            return self._absent(desired)

        try:
            members = self.client.list_members(team.group_id)
        except (PermissionDeniedError, ResourceNotFoundError) as exc:
            logger.warning("Cannot list members, reporting absent: %s", exc, extra=log_extra)
            return self._absent(desired, team)

        current = self.current_state(desired, team, members)
        if current.ensure is Ensure.ABSENT and members:
            # the listing may carry a mail address that differs from the UPN
            user_id = self._lookup_user_id(desired)
            if user_id:
                current = self.current_state(desired, team, members, user_id)
        return current

    def apply(self, desired: MembershipRecord) -> None:
        team = self.client.resolve_team(desired.team_name)
        if team is None:
            raise TeamNotFoundError(desired.team_name)

        if desired.ensure is Ensure.PRESENT:
            self.client.add_member(
                AddMemberRequest(
                    group_id=team.group_id,
                    user=desired.user,
                    role=desired.effective_role,
                )
            )
            return

        # Member is the implied role of a plain removal
        role = None if desired.role in (None, Role.MEMBER) else desired.role
        self.client.remove_member(
            RemoveMemberRequest(group_id=team.group_id, user=desired.user, role=role)
        )

    def test(self, desired: MembershipRecord) -> bool:
        """True when the current state already matches the desired record."""
        current = self.read(desired)
        if desired.ensure is Ensure.ABSENT and desired.role is Role.OWNER:
            # Absent+Owner means "not an owner"; apply only revokes ownership
            drift = ["role"] if current.role is Role.OWNER else []
        else:
            fields = list(COMPARED_FIELDS)
            # Absent records carry no authoritative role
            if desired.role is None or desired.ensure is Ensure.ABSENT:
                fields.remove("role")
            drift = [f for f in fields if getattr(current, f) != getattr(desired, f)]
        if drift:
            logger.info(
                "Drift detected on %s", ", ".join(drift),
                extra={"team": desired.team_name, "user": desired.user, "drift": drift},
            )
        return not drift

    def reconcile(self, desired: MembershipRecord, auto_correct: bool = True) -> bool:
        """Test the record and apply it when drifted. Returns the Test result."""
        if self.test(desired):
            return True
        if auto_correct:
            self.apply(desired)
        return False
