"""Resumable installation state."""

from .backends import (
    CorruptStateError,
    EncryptedFileStateBackend,
    FileStateBackend,
    InMemoryStateBackend,
    StateBackend,
    backend_from_settings,
    default_state_dir,
    load_or_create_key,
)
from .model import InstallationState
from .store import DEFAULT_TTL, InstallationStateStore

__all__ = [
    'DEFAULT_TTL',
    'CorruptStateError',
    'EncryptedFileStateBackend',
    'FileStateBackend',
    'InMemoryStateBackend',
    'InstallationState',
    'InstallationStateStore',
    'StateBackend',
    'backend_from_settings',
    'default_state_dir',
    'load_or_create_key',
]
