"""
Extension engine - activity scoring, session heat and the adaptive extension strategy.

Components:
- ActivityTracker: time-decayed weighted activity scores over recent/short/medium windows
- calculate_session_heat(): HOT / WARM / COOL / COLD classification of those scores
- AdaptiveExtensionStrategy: gate pipeline that approves or denies an extension and sizes it
- load_extension_config(): validated configuration (defaults < YAML < env < overrides)
"""
from sandbox_keeper.extension.extension_config import (
    ActivityType,
    AdaptiveExtensionConfig,
    DEFAULT_CONFIG,
    SessionHeat,
    load_extension_config,
)
from sandbox_keeper.extension.activity_tracker import (
    ActivityRecord,
    ActivityScores,
    ActivityTracker,
    MAX_TRACKED_ACTIVITIES,
)
from sandbox_keeper.extension.session_heat import calculate_session_heat, classify_scores
from sandbox_keeper.extension.adaptive_extension import (
    AdaptiveExtensionStrategy,
    ExtensionDecision,
    ExtensionMetrics,
    ExtensionStrategyState,
)

__all__ = [
    'ActivityType',
    'AdaptiveExtensionConfig',
    'DEFAULT_CONFIG',
    'SessionHeat',
    'load_extension_config',
    'ActivityRecord',
    'ActivityScores',
    'ActivityTracker',
    'MAX_TRACKED_ACTIVITIES',
    'calculate_session_heat',
    'classify_scores',
    'AdaptiveExtensionStrategy',
    'ExtensionDecision',
    'ExtensionMetrics',
    'ExtensionStrategyState',
]
