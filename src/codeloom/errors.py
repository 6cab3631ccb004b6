"""
Error taxonomy for codeloom.

Recoverable conditions derive from CodeloomError. Three conditions sit outside
that tree:

- InvariantViolation is an AssertionError: a logic defect, fatal.
- RestartRequired and InstallFailed are SystemExit: they must pass through
  the per-fragment `except Exception` isolation and reach the process entry
  point. Once an install has been attempted, no further events are handled.
"""
from __future__ import annotations


# Exit status handed to the supervisor when a restart is needed (EX_TEMPFAIL).
EXIT_RESTART = 75


class CodeloomError(Exception):
    """Base class for codeloom runtime errors."""


class ConfigError(CodeloomError):
    """Required configuration is missing or invalid."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class StoreCapacityError(CodeloomError):
    """The fragment store would exceed its configured capacity."""


class BackfillError(CodeloomError):
    """Startup history could not be loaded safely."""


class ChannelUnavailableError(CodeloomError):
    """A designated channel cannot be read."""


class GatewayError(CodeloomError):
    """The messaging gateway failed in a way that cannot be retried."""


class InvariantViolation(AssertionError):
    """A fragment from an untrusted author reached evaluation."""


class RestartRequired(SystemExit):
    """A capability was installed; the process must restart to use it."""

    def __init__(self, name: str, install_target: str):
        self.name = name
        self.install_target = install_target
        super().__init__(EXIT_RESTART)

    def __str__(self) -> str:
        return (
            f"Installed {self.install_target!r} for capability {self.name!r}; "
            "restart the process to use it"
        )


class InstallFailed(SystemExit):
    """Installing a missing capability failed; the process stops with status 1."""

    def __init__(self, name: str, install_target: str, reason: str):
        self.name = name
        self.install_target = install_target
        self.reason = reason
        super().__init__(1)

    def __str__(self) -> str:
        return f"Could not install {self.install_target!r} for capability {self.name!r}: {self.reason}"
