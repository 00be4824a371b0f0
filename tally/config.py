"""
Configuration management for tally.

The configuration is an optional TOML file, `.tally.toml`, at the root of
the working tree. It names the default remote, can pin the anchor commit,
and toggles compare-and-swap writes. Environment variables override it.
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import tomli_w


CONFIG_FILENAME = ".tally.toml"
CONFIG_VERSION = 1


@dataclass
class TrackerConfig:
    """Complete tracker configuration."""
    repo_path: Path
    version: int = CONFIG_VERSION
    backend: str = "git"
    remote: str = "origin"
    anchor: Optional[str] = None        # pinned anchor commit; resolved from history if unset
    author: Optional[str] = None        # identity override, below GIT_AUTHOR_EMAIL
    compare_and_swap: bool = True

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.repo_path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def find_repo_root(start: Path) -> Path:
    """
    Walk up from start to the directory holding `.git` or a config file.

    Falls back to start itself when neither is found.
    """
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists() or (candidate / CONFIG_FILENAME).exists():
            return candidate
    return start


def load_config(repo_path: Optional[Path] = None) -> TrackerConfig:
    """
    Load configuration for the repository containing repo_path.

    A missing config file yields defaults. Environment overrides:
    TALLY_REMOTE, TALLY_ANCHOR.

    Raises:
        ValueError: If config is invalid
    """
    root = find_repo_root(Path(repo_path) if repo_path else Path.cwd())
    config = TrackerConfig(repo_path=root)

    if config.config_path.exists():
        with open(config.config_path, "rb") as f:
            data = tomllib.load(f)

        section = data.get("tally", {})
        version = section.get("version", CONFIG_VERSION)
        if version > CONFIG_VERSION:
            raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

        config.version = version
        config.backend = section.get("backend", config.backend)
        config.remote = section.get("remote", config.remote)
        config.anchor = section.get("anchor") or None
        config.author = section.get("author") or None
        config.compare_and_swap = bool(section.get("compare_and_swap", True))

    if os.environ.get("TALLY_REMOTE"):
        config.remote = os.environ["TALLY_REMOTE"]
    if os.environ.get("TALLY_ANCHOR"):
        config.anchor = os.environ["TALLY_ANCHOR"]

    return config


def save_config(config: TrackerConfig) -> None:
    """Save configuration to the repository root."""
    section: dict = {
        "version": config.version,
        "backend": config.backend,
        "remote": config.remote,
        "compare_and_swap": config.compare_and_swap,
    }
    # TOML has no null
    if config.anchor:
        section["anchor"] = config.anchor
    if config.author:
        section["author"] = config.author

    with open(config.config_path, "wb") as f:
        tomli_w.dump({"tally": section}, f)
