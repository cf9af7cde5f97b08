"""Workspace module - registry, locks and provisioning of isolated checkouts."""

from .lock import LockConflictError, LockInfo, LockType, WorkspaceLock
from .manager import Workspace, WorkspaceManager
from .registry import (
	CLEAR,
	UNSET,
	FieldPatch,
	ListEntry,
	RegistryEntry,
	WorkspaceNotFoundError,
	WorkspacePatch,
	WorkspaceRegistry,
)
from .selector import WorkspaceAutoSelector

__all__ = [
	"CLEAR",
	"UNSET",
	"FieldPatch",
	"ListEntry",
	"LockConflictError",
	"LockInfo",
	"LockType",
	"RegistryEntry",
	"Workspace",
	"WorkspaceAutoSelector",
	"WorkspaceLock",
	"WorkspaceManager",
	"WorkspaceNotFoundError",
	"WorkspacePatch",
	"WorkspaceRegistry",
]
