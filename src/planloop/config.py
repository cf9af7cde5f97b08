"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import platformdirs
from pydantic import BaseModel, Field

APP_NAME = "planloop"
APP_AUTHOR = "planloop"

REPO_CONFIG_FILENAME = ".planloop.toml"


class CommandConfig(BaseModel):
	"""A shell command run inside a workspace (post-clone, update, post-apply)."""
	title: str = Field(default="", description="Label used in log output")
	command: str
	working_directory: Optional[str] = Field(
		default=None, description="Relative paths resolve against the workspace root"
	)
	env: dict[str, str] = Field(default_factory=dict)
	allow_failure: bool = False
	hide_output_on_success: bool = False

	@property
	def label(self) -> str:
		return self.title or self.command


class WorkspaceMethod(str, Enum):
	"""How new workspaces are provisioned."""
	MANAGED = "managed"
	SCRIPT = "script"


class WorkspaceCreationConfig(BaseModel):
	"""The [workspace] table of config.toml."""
	method: WorkspaceMethod = WorkspaceMethod.MANAGED
	script_path: Optional[str] = None
	repository_url: Optional[str] = None
	create_branch: bool = True
	post_clone_commands: list[CommandConfig] = Field(default_factory=list)
	update_commands: list[CommandConfig] = Field(default_factory=list)


def _default_workspace_base() -> Path:
	return Path.home() / f".{APP_NAME}" / "workspaces"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	log_dir: Path = field(init=False)

	# Overridable independently of config_dir/data_dir
	tracking_file: Optional[Path] = None
	lock_dir: Optional[Path] = None

	# User-configurable
	tasks_dir: Path = field(default_factory=lambda: Path("tasks"))
	workspace_base_dir: Path = field(default_factory=_default_workspace_base)
	default_executor: str = "claude-code"
	review_executor: str = "claude-code"
	inactivity_timeout: float = 900.0
	post_apply_commands: list[CommandConfig] = field(default_factory=list)
	workspace: WorkspaceCreationConfig = field(default_factory=WorkspaceCreationConfig)

	repo_root: Optional[Path] = None

	def __post_init__(self) -> None:
		self.log_dir = self.data_dir / "logs"

	@property
	def tracking_file_path(self) -> Path:
		"""Workspace registry location."""
		return self.tracking_file or self.config_dir / "workspaces.json"

	@property
	def lock_dir_path(self) -> Path:
		"""Directory holding one lock file per workspace."""
		return self.lock_dir or self.data_dir / "locks"

	def resolve_tasks_dir(self, repo_root: Optional[Path] = None) -> Path:
		"""Resolve the plan directory, relative values against the repository root."""
		tasks_dir = self.tasks_dir.expanduser()
		if tasks_dir.is_absolute():
			return tasks_dir
		root = repo_root or self.repo_root or Path.cwd()
		return (root / tasks_dir).resolve()

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {
	"config_dir", "data_dir", "tracking_file", "lock_dir", "tasks_dir", "workspace_base_dir",
}


def _apply_env_overrides(config: Config) -> Config:
	"""Apply PLANLOOP_* environment variable overrides."""
	env_map = {
		"PLANLOOP_CONFIG_DIR": "config_dir",
		"PLANLOOP_DATA_DIR": "data_dir",
		"PLANLOOP_TASKS_DIR": "tasks_dir",
		"PLANLOOP_TRACKING_FILE": "tracking_file",
		"PLANLOOP_LOCK_DIR": "lock_dir",
		"PLANLOOP_WORKSPACE_BASE_DIR": "workspace_base_dir",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val).expanduser())
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_table(config: Config, data: dict) -> Config:
	for key, val in data.items():
		if key == "workspace":
			config.workspace = WorkspaceCreationConfig.model_validate(val)
		elif key == "post_apply_commands":
			config.post_apply_commands = [CommandConfig.model_validate(c) for c in val]
		elif key in PATH_FIELDS:
			setattr(config, key, Path(os.path.expanduser(val)))
		elif hasattr(config, key):
			setattr(config, key, val)
	return config


def _apply_toml(config: Config, toml_path: Path) -> Config:
	"""Apply a config.toml's values if the file exists."""
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	config = _apply_table(config, data)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config(repo_root: Optional[Path] = None) -> Config:
	"""Load config with precedence: env vars > repo .planloop.toml > config.toml > defaults."""
	config = Config()
	config = _apply_env_overrides(config)
	config = _apply_toml(config, config.config_dir / "config.toml")
	if repo_root is not None:
		config.repo_root = Path(repo_root)
		config = _apply_toml(config, config.repo_root / REPO_CONFIG_FILENAME)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
