"""Configuration via environment variables.

Supports:
  - Environment variables (local dev, containers)
  - .env files loaded with python-dotenv
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

CONFIGURATION_MODES = ("ApplyAndMonitor", "ApplyAndAutoCorrect")
EXPORT_FORMATS = ("dsc", "jsonl")
WORKER_MODES = ("process", "thread")


@dataclass(frozen=True)
class GraphConfig:
    tenant: str
    client_id: str
    client_secret: str = field(repr=False)
    principal: Optional[str] = None  # UPN used to derive the organization name
    api_base_url: str = "https://graph.microsoft.com/v1.0"
    authority: str = "https://login.microsoftonline.com"
    timeout_s: float = 30.0
    max_retries: int = 5


@dataclass(frozen=True)
class ExtractionConfig:
    max_concurrency: int = 8
    poll_interval_s: float = 1.0
    deadline_s: Optional[float] = None  # None = wait for every job
    worker_mode: str = "process"
    export_format: str = "dsc"
    credential_placeholder: str = "$Credsglobaladmin"
    organization_placeholder: str = "$OrganizationName"


@dataclass(frozen=True)
class SchedulerConfig:
    consistency_interval_min: int = 15
    configuration_mode: str = "ApplyAndMonitor"
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class TeamSyncConfig:
    graph: GraphConfig
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


def _optional_float(name: str) -> Optional[float]:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else None


def _choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.environ.get(name, default)
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got '{value}'")
    return value


def load_config() -> TeamSyncConfig:
    """Load configuration from environment variables.

    The tenant, client id and client secret are required; everything else
    has a default suitable for a mid-sized tenant.
    """
    load_dotenv()

    missing = [
        name for name in ("TEAMS_TENANT", "TEAMS_CLIENT_ID", "TEAMS_CLIENT_SECRET")
        if not os.environ.get(name)
    ]
    if missing:
        raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

    graph = GraphConfig(
        tenant=os.environ["TEAMS_TENANT"],
        client_id=os.environ["TEAMS_CLIENT_ID"],
        client_secret=os.environ["TEAMS_CLIENT_SECRET"],
        principal=os.environ.get("TEAMS_PRINCIPAL") or None,
        api_base_url=os.environ.get("GRAPH_API_BASE_URL", "https://graph.microsoft.com/v1.0"),
        authority=os.environ.get("GRAPH_AUTHORITY", "https://login.microsoftonline.com"),
        timeout_s=float(os.environ.get("GRAPH_TIMEOUT_S", "30")),
        max_retries=int(os.environ.get("GRAPH_MAX_RETRIES", "5")),
    )

    extraction = ExtractionConfig(
        max_concurrency=int(os.environ.get("EXTRACT_MAX_CONCURRENCY", "8")),
        poll_interval_s=float(os.environ.get("EXTRACT_POLL_INTERVAL_S", "1.0")),
        deadline_s=_optional_float("EXTRACT_DEADLINE_S"),
        worker_mode=_choice("EXTRACT_WORKER_MODE", "process", WORKER_MODES),
        export_format=_choice("EXTRACT_FORMAT", "dsc", EXPORT_FORMATS),
        credential_placeholder=os.environ.get(
            "EXPORT_CREDENTIAL_PLACEHOLDER", "$Credsglobaladmin"
        ),
    )

    scheduler = SchedulerConfig(
        consistency_interval_min=int(os.environ.get("CONSISTENCY_INTERVAL_MIN", "15")),
        configuration_mode=_choice(
            "CONFIGURATION_MODE", "ApplyAndMonitor", CONFIGURATION_MODES
        ),
        misfire_grace_time=int(os.environ.get("SCHEDULER_MISFIRE_GRACE_S", "300")),
    )

    return TeamSyncConfig(graph=graph, extraction=extraction, scheduler=scheduler)
