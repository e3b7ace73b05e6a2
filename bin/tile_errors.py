"""
tileman error types.

Configuration and setup problems abort a run before any network or
filesystem work. Per-tile problems are never raised; they travel back to
the collector inside a FetchOutcome.
"""


class TilemanError(Exception):
    """Base class for all tileman errors."""


class FatalError(TilemanError):
    """An error that aborts the whole run."""


class ConfigError(FatalError):
    """Invalid resolution, unknown region, unparseable time, bad limits."""


class SetupError(FatalError):
    """The output directory could not be created."""
