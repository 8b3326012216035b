from .loader import (
    ConfigEntryError,
    ConfigError,
    WorkspaceConfig,
    WorkspaceFileNotFoundError,
    load_workspace_config,
    load_yaml_config,
    single_location_config,
    workspace_config_from_mapping,
)
from .models import HostSettings

__all__ = [
    "ConfigEntryError",
    "ConfigError",
    "HostSettings",
    "WorkspaceConfig",
    "WorkspaceFileNotFoundError",
    "load_workspace_config",
    "load_yaml_config",
    "single_location_config",
    "workspace_config_from_mapping",
]
