"""Load desired membership records from a JSON or JSON Lines file."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from scripts.teamsync.export import ORGANIZATION_TOKEN
from scripts.teamsync.models import MembershipRecord

logger = logging.getLogger("teamsync.desired_state")


def load_desired_state(
    path: str | Path, organization: Optional[str] = None
) -> list[MembershipRecord]:
    """Parse a desired-state file.

    Accepts either a JSON array of entries or one JSON object per line (the
    ``jsonl`` export format). ``$OrganizationName`` is expanded back to the
    organization so an export from one tenant can be applied to another.
    """
    text = Path(path).read_text(encoding="utf-8")
    if organization:
        text = text.replace(ORGANIZATION_TOKEN, organization)
    elif ORGANIZATION_TOKEN in text:
        raise ValueError(
            f"{path} contains {ORGANIZATION_TOKEN} but no organization is known"
        )

    stripped = text.lstrip()
    if stripped.startswith("["):
        entries = json.loads(stripped)
    else:
        entries = [
            json.loads(line)
            for line in text.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]

    records = [MembershipRecord.from_dict(entry) for entry in entries]
    logger.info("Loaded %d desired records from %s", len(records), path)
    return records
