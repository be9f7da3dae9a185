"""
Timeout Manager - the control loop around one sandbox session.

Polls the resource's remaining time, warns before expiry, drives adaptive
auto-extension and reports expiry exactly once.
"""
from sandbox_keeper.timeout_manager.poll_task import PollTask
from sandbox_keeper.timeout_manager.timeout_manager import (
    LEGACY_ACTIVITY_TYPES,
    ResourceStatus,
    SandboxResource,
    TimeoutManager,
    TimeoutSettings,
    TimeoutState,
    get_global_timeout_manager,
    load_timeout_settings,
    reset_global_timeout_manager,
)

__all__ = [
    'PollTask',
    'LEGACY_ACTIVITY_TYPES',
    'ResourceStatus',
    'SandboxResource',
    'TimeoutManager',
    'TimeoutSettings',
    'TimeoutState',
    'get_global_timeout_manager',
    'load_timeout_settings',
    'reset_global_timeout_manager',
]
