"""Microphone permission tracking."""

from voicelens.foundation.permissions.service import (
    PermissionBackend,
    PermissionGate,
    StaticPermissionBackend,
)

__all__ = ["PermissionBackend", "PermissionGate", "StaticPermissionBackend"]
