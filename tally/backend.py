"""
Pluggable version-control backend factory.

Creates the backend the storage core runs against, based on configuration.
The default ``git`` backend shells out to the git CLI. External backends
register via the ``tally.backends`` entry point group.

External backend packages provide a factory function::

    def create_backend(config: TrackerConfig) -> BackendProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."tally.backends"]
    my-backend = "my_package.backend:create_backend"
"""

from .config import TrackerConfig
from .protocol import BackendProtocol


def create_backend(config: TrackerConfig) -> BackendProtocol:
    """
    Create the version-control backend from configuration.

    For ``backend = "git"`` (default), creates a GitBackend on the
    configured repository path. For other values, loads the backend via
    the ``tally.backends`` entry point group.
    """
    if config.backend == "git":
        from .git_backend import GitBackend
        return GitBackend(config.repo_path)
    return _load_backend(config.backend, config)


def _load_backend(name: str, config: TrackerConfig) -> BackendProtocol:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="tally.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered."
    )
