# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import os
from pathlib import Path

# Network budgets (seconds)
REMOTE_DEFINITIONS_TIMEOUT = 5.0
METADATA_ADAPTER_TIMEOUT = 5.0
PROVIDER_FETCH_TIMEOUT = 15.0
DEFAULT_RACE_TIMEOUT = 30.0

DEFAULT_REMOTE_DEFINITIONS_URL = (
    "https://raw.githubusercontent.com/phorde/opencode-free-fleet/main/resources/community-models.json"
)


def fleet_home() -> Path:
    """
    Root directory for host configuration and fleet caches.
    Overridable with FREE_FLEET_HOME; defaults to ~/.config/opencode.
    """
    override = os.environ.get("FREE_FLEET_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "opencode"


def cache_dir() -> Path:
    return fleet_home() / "cache"


def metadata_cache_path() -> Path:
    return cache_dir() / "metadata.json"


def policy_cache_path() -> Path:
    return cache_dir() / "provider-policies.json"


def audit_log_path() -> Path:
    return cache_dir() / "audit.log"


def metrics_path() -> Path:
    return fleet_home() / "fleet-metrics.json"


def host_config_path() -> Path:
    return fleet_home() / "oh-my-opencode.json"


def antigravity_accounts_path() -> Path:
    return fleet_home() / "antigravity-accounts.json"


def remote_definitions_url() -> str:
    return os.environ.get("FREE_FLEET_COMMUNITY_URL", DEFAULT_REMOTE_DEFINITIONS_URL)
