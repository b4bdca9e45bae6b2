"""Tests for the Graph team directory client HTTP handling."""
import time
from unittest.mock import Mock

import pytest
import requests

from scripts.teamsync.auth import AuthContext
from scripts.teamsync.config import GraphConfig
from scripts.teamsync.directory import TeamDirectoryClient
from scripts.teamsync.exceptions import (
    DirectoryAPIError,
    DirectoryTransportError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ThrottledError,
)
from scripts.teamsync.models import (
    AddMemberRequest,
    Ensure,
    MembershipRecord,
    RemoveMemberRequest,
    Role,
)
from scripts.teamsync.reconciler import MembershipReconciler

BASE = "https://graph.example.test/v1.0"


class _StubResponse:
    def __init__(self, payload=None, status_code=200, headers=None, text=None):
        self._payload = payload if payload is not None else {}
        self.status_code = status_code
        self.headers = headers or {}
        self.text = text if text is not None else str(self._payload)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _client(responses, max_retries=2):
    session = Mock()
    session.headers = {}
    session.request.side_effect = list(responses)
    auth = AuthContext(
        access_token="token",
        expires_at=time.time() + 3600,
        tenant="contoso.onmicrosoft.com",
        organization="contoso",
        platform="MicrosoftTeams",
    )
    config = GraphConfig(
        tenant="contoso.onmicrosoft.com",
        client_id="app",
        client_secret="secret",
        api_base_url=BASE,
        max_retries=max_retries,
    )
    return TeamDirectoryClient(auth, config, session=session), session


def _user_id(entry):
    return entry[2] if len(entry) > 2 else f"id-{entry[0]}"


def _members(*entries):
    return _StubResponse({
        "value": [
            {"id": f"m-{i}", "email": entry[0], "roles": entry[1], "userId": _user_id(entry)}
            for i, entry in enumerate(entries)
        ]
    })


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr("scripts.teamsync.directory.time.sleep", lambda s: None)


class TestRequests:
    def test_bearer_token_is_sent(self):
        client, session = _client([_StubResponse({"value": []})])

        client.list_teams()

        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer token"

    def test_pagination_follows_next_link(self):
        client, session = _client([
            _StubResponse({
                "value": [{"id": "g-1", "displayName": "One"}],
                "@odata.nextLink": f"{BASE}/teams?$skiptoken=abc",
            }),
            _StubResponse({"value": [{"id": "g-2", "displayName": "Two"}]}),
        ])

        teams = client.list_teams()

        assert [t.group_id for t in teams] == ["g-1", "g-2"]
        second = session.request.call_args_list[1]
        assert second.args[1] == f"{BASE}/teams?$skiptoken=abc"
        assert second.kwargs["params"] is None

    @pytest.mark.parametrize(
        "status, error",
        [
            (401, PermissionDeniedError),
            (403, PermissionDeniedError),
            (404, ResourceNotFoundError),
            (500, DirectoryAPIError),
        ],
    )
    def test_status_codes_map_to_exceptions(self, status, error):
        client, _ = _client([
            _StubResponse({"error": {"code": "x", "message": "nope"}}, status_code=status)
        ])

        with pytest.raises(error) as exc_info:
            client.list_members("g-1")

        assert exc_info.value.status_code == status
        assert exc_info.value.message == "nope"

    def test_throttling_is_retried(self, monkeypatch):
        slept = []
        monkeypatch.setattr("scripts.teamsync.directory.time.sleep", slept.append)
        client, _ = _client([
            _StubResponse(status_code=429, headers={"Retry-After": "7"}),
            _members(("a@contoso.com", [])),
        ])

        members = client.list_members("g-1")

        assert [m.user for m in members] == ["a@contoso.com"]
        assert slept == [7.0]

    def test_throttling_gives_up_after_max_retries(self):
        client, session = _client([_StubResponse(status_code=429)] * 3, max_retries=2)

        with pytest.raises(ThrottledError):
            client.list_members("g-1")
        assert session.request.call_count == 3

    def test_network_failure_is_transport_error(self):
        client, session = _client([])
        session.request.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(DirectoryTransportError):
            client.list_teams()


class TestTeams:
    def test_resolve_team_returns_none_when_missing(self):
        client, _ = _client([_StubResponse({"value": []})])

        assert client.resolve_team("Ghosts") is None

    def test_resolve_team_escapes_quotes(self):
        client, session = _client([
            _StubResponse({"value": [{"id": "g-1", "displayName": "Bob's Team"}]})
        ])

        team = client.resolve_team("Bob's Team")

        assert team.group_id == "g-1"
        params = session.request.call_args.kwargs["params"]
        assert params["$filter"] == "displayName eq 'Bob''s Team'"


class TestMembers:
    def test_roles_are_mapped(self):
        client, _ = _client([
            _members(("o@contoso.com", ["owner"]), ("m@contoso.com", []), ("g@x.com", ["guest"]))
        ])

        roles = [m.role for m in client.list_members("g-1")]

        assert roles == [Role.OWNER, Role.MEMBER, Role.GUEST]

    def test_add_new_member_posts(self):
        client, session = _client([
            _members(),
            _StubResponse({"id": "u-9"}),
            _StubResponse(status_code=201),
        ])

        client.add_member(AddMemberRequest("g-1", "new@contoso.com", Role.OWNER))

        method, url = session.request.call_args.args
        body = session.request.call_args.kwargs["json"]
        assert (method, url) == ("POST", f"{BASE}/teams/g-1/members")
        assert body["roles"] == ["owner"]
        assert body["user@odata.bind"] == f"{BASE}/users('u-9')"

    def test_add_unknown_user_binds_by_name(self):
        client, session = _client([
            _members(),
            _StubResponse({"error": {"message": "no such user"}}, status_code=404),
            _StubResponse({"value": []}),
            _StubResponse(status_code=201),
        ])

        client.add_member(AddMemberRequest("g-1", "new@contoso.com"))

        body = session.request.call_args.kwargs["json"]
        assert body["user@odata.bind"] == f"{BASE}/users('new@contoso.com')"

    def test_add_existing_member_with_other_role_patches(self):
        client, session = _client([
            _members(("a@contoso.com", [])),
            _StubResponse(status_code=200),
        ])

        client.add_member(AddMemberRequest("g-1", "a@contoso.com", Role.OWNER))

        method, url = session.request.call_args.args
        assert (method, url) == ("PATCH", f"{BASE}/teams/g-1/members/m-0")

    def test_add_existing_member_with_same_role_is_noop(self):
        client, session = _client([_members(("a@contoso.com", []))])

        client.add_member(AddMemberRequest("g-1", "a@contoso.com", Role.MEMBER))

        assert session.request.call_count == 1

    def test_remove_member_deletes(self):
        client, session = _client([
            _members(("a@contoso.com", [])),
            _StubResponse(status_code=204),
        ])

        client.remove_member(RemoveMemberRequest("g-1", "a@contoso.com"))

        method, url = session.request.call_args.args
        assert (method, url) == ("DELETE", f"{BASE}/teams/g-1/members/m-0")

    def test_remove_owner_role_only_demotes(self):
        client, session = _client([
            _members(("a@contoso.com", ["owner"])),
            _StubResponse(status_code=200),
        ])

        client.remove_member(RemoveMemberRequest("g-1", "a@contoso.com", Role.OWNER))

        method, _ = session.request.call_args.args
        assert method == "PATCH"
        assert session.request.call_args.kwargs["json"]["roles"] == []

    def test_remove_non_member_is_noop(self):
        client, session = _client([_members(), _StubResponse({"id": "u-7"})])

        client.remove_member(RemoveMemberRequest("g-1", "a@contoso.com"))

        methods = [c.args[0] for c in session.request.call_args_list]
        assert methods == ["GET", "GET"]


class TestUserIdentity:
    def test_member_matches_case_insensitively(self):
        client, session = _client([_members(("Alice@Contoso.com", []))])

        client.add_member(AddMemberRequest("g-1", "alice@contoso.com", Role.MEMBER))

        assert session.request.call_count == 1

    def test_upn_lookup_returns_directory_id(self):
        client, session = _client([_StubResponse({"id": "u-1"})])

        assert client.resolve_user_id("asmith@contoso.com") == "u-1"
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", f"{BASE}/users/asmith@contoso.com")

    def test_mail_address_falls_back_to_mail_filter(self):
        client, session = _client([
            _StubResponse({"error": {"message": "not found"}}, status_code=404),
            _StubResponse({"value": [{"id": "u-2"}]}),
        ])

        assert client.resolve_user_id("o'neil@contoso.com") == "u-2"
        params = session.request.call_args.kwargs["params"]
        assert params["$filter"] == "mail eq 'o''neil@contoso.com'"

    def test_existing_member_listed_by_mail_is_not_added_again(self):
        client, session = _client([
            _members(("alice.smith@contoso.com", ["owner"], "u-1")),
            _StubResponse({"id": "u-1"}),
        ])

        client.add_member(AddMemberRequest("g-1", "asmith@contoso.com", Role.OWNER))

        methods = [c.args[0] for c in session.request.call_args_list]
        assert methods == ["GET", "GET"]

    def test_read_reports_member_listed_by_mail_as_present(self):
        client, _ = _client([
            _StubResponse({"value": [{"id": "g-1", "displayName": "Sales"}]}),
            _members(("alice.smith@contoso.com", ["owner"], "u-1")),
            _StubResponse({"id": "u-1"}),
        ])

        current = MembershipReconciler(client).read(
            MembershipRecord(team_name="Sales", user="asmith@contoso.com")
        )

        assert current.ensure is Ensure.PRESENT
        assert current.role is Role.OWNER
        assert current.user == "asmith@contoso.com"


class TestMalformedResponses:
    def test_non_json_body_is_api_error(self):
        client, _ = _client([
            _StubResponse(ValueError("Expecting value"), text="<html>gateway</html>")
        ])

        with pytest.raises(DirectoryAPIError) as exc_info:
            client.list_members("g-1")

        assert exc_info.value.status_code == 200

    def test_non_object_body_is_api_error(self):
        client, _ = _client([_StubResponse(["not", "an", "object"])])

        with pytest.raises(DirectoryAPIError):
            client.list_teams()
