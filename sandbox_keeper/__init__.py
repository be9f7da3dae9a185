"""
sandbox_keeper - activity-driven lifetime governor for ephemeral sandbox sessions.
"""
from sandbox_keeper.errors import ExtensionConfigError, SandboxKeeperError, TimeoutManagerDisposedError
from sandbox_keeper.extension import (
    ActivityTracker,
    ActivityType,
    AdaptiveExtensionConfig,
    AdaptiveExtensionStrategy,
    ExtensionDecision,
    SessionHeat,
    calculate_session_heat,
    load_extension_config,
)
from sandbox_keeper.timeout_manager import (
    ResourceStatus,
    TimeoutManager,
    TimeoutSettings,
    TimeoutState,
    load_timeout_settings,
)

__version__ = "0.1.0"

__all__ = [
    'ExtensionConfigError',
    'SandboxKeeperError',
    'TimeoutManagerDisposedError',
    'ActivityTracker',
    'ActivityType',
    'AdaptiveExtensionConfig',
    'AdaptiveExtensionStrategy',
    'ExtensionDecision',
    'SessionHeat',
    'calculate_session_heat',
    'load_extension_config',
    'ResourceStatus',
    'TimeoutManager',
    'TimeoutSettings',
    'TimeoutState',
    'load_timeout_settings',
]
