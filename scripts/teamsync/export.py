"""Render membership records as exportable configuration blocks."""

from __future__ import annotations

import json
import re
import uuid
from typing import Optional

from scripts.teamsync.models import MembershipRecord

ORGANIZATION_TOKEN = "$OrganizationName"
FORMATS = ("dsc", "jsonl")


def instance_name(record: MembershipRecord) -> str:
    """Stable resource instance name so repeated exports diff cleanly."""
    key = f"teams://{record.group_id or record.team_name}/{record.user}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


def _ps_quote(value: Optional[str]) -> str:
    value = value or ""
    value = value.replace("`", "``").replace('"', '`"').replace("$", "`$")
    return f'"{value}"'


def parameterize_organization(
    text: str, organization: Optional[str], token: str = ORGANIZATION_TOKEN
) -> str:
    """Replace every occurrence of the organization name, ignoring case."""
    if not organization:
        return text
    return re.sub(re.escape(organization), lambda _m: token, text, flags=re.IGNORECASE)


def render_dsc(
    record: MembershipRecord,
    credential_placeholder: str,
    organization: Optional[str] = None,
    organization_token: str = ORGANIZATION_TOKEN,
) -> str:
    def principal(value: Optional[str]) -> str:
        # token goes in after quoting so PowerShell expands it
        return parameterize_organization(_ps_quote(value), organization, organization_token)

    role = record.role.value if record.role else ""
    credential = parameterize_organization(credential_placeholder, organization, organization_token)
    lines = [
        f"        TeamsUser {instance_name(record)}",
        "        {",
        f"            TeamName             = {principal(record.team_name)};",
        f"            User                 = {principal(record.user)};",
        f"            Role                 = {_ps_quote(role)};",
        f"            Ensure               = {_ps_quote(record.ensure.value)};",
        f"            Credential           = {credential};",
        "        }",
    ]
    return "\n".join(lines) + "\n"


def render_jsonl(
    record: MembershipRecord,
    credential_placeholder: str,
    organization: Optional[str] = None,
    organization_token: str = ORGANIZATION_TOKEN,
) -> str:
    entry = record.to_dict()
    for key in ("team_name", "user"):
        entry[key] = parameterize_organization(entry[key] or "", organization, organization_token)
    entry["credential"] = parameterize_organization(
        credential_placeholder, organization, organization_token
    )
    return json.dumps(entry) + "\n"


def render_block(
    record: MembershipRecord,
    fmt: str,
    credential_placeholder: str,
    organization: Optional[str] = None,
    organization_token: str = ORGANIZATION_TOKEN,
) -> str:
    """Render one record.

    The organization name is parameterized in the TeamName, User and
    Credential values only, never in resource keywords or the instance name.
    """
    if fmt == "dsc":
        return render_dsc(record, credential_placeholder, organization, organization_token)
    if fmt == "jsonl":
        return render_jsonl(record, credential_placeholder, organization, organization_token)
    raise ValueError(f"Unknown export format '{fmt}', expected one of {', '.join(FORMATS)}")


def render_document(
    content: str,
    fmt: str,
    credential_placeholder: str,
    organization_token: str = ORGANIZATION_TOKEN,
) -> str:
    """Wrap merged blocks into a complete document for the format."""
    if fmt == "jsonl":
        return content
    credential_param = credential_placeholder.lstrip("$")
    return (
        "Configuration TeamsMembership\n"
        "{\n"
        "    param (\n"
        "        [parameter()]\n"
        "        [System.Management.Automation.PSCredential]\n"
        f"        ${credential_param},\n"
        "\n"
        "        [parameter()]\n"
        "        [System.String]\n"
        f"        {organization_token}\n"
        "    )\n"
        "\n"
        "    Import-DscResource -ModuleName Microsoft365DSC\n"
        "\n"
        "    Node localhost\n"
        "    {\n"
        f"{content}"
        "    }\n"
        "}\n"
    )
