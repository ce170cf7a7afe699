"""Error taxonomy for the request pipeline.

Every failure inside a run is a :class:`ProvisioningError`. The pipeline turns
it into a single error status; nothing is retried in-process.
"""

from __future__ import annotations

# Exit codes reported when the tool never produced one of its own
EXIT_LAUNCH_FAILED = 1
EXIT_TIMEOUT = 124
EXIT_PLAYBOOK_NOT_FOUND = 127


class ProvisioningError(Exception):
    """Base class for failures that end a run with an error status."""

    exit_code: int = 0

    def __init__(
        self, message: str, *, exit_code: int | None = None, output: str = ""
    ) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.output = output


class MalformedMessageError(ProvisioningError):
    """The message body could not be decoded as a request."""


class RequestValidationError(ProvisioningError):
    """A decoded request failed a field check (first violation wins)."""


class UnsupportedDBTypeError(RequestValidationError):
    """The requested db_type has no playbook."""


class InventoryWriteError(ProvisioningError):
    """The inventory directory or file could not be written."""


class PlaybookNotFoundError(ProvisioningError):
    """The playbook selected for the request does not exist on disk."""

    exit_code = EXIT_PLAYBOOK_NOT_FOUND


class ProcessLaunchError(ProvisioningError):
    """The tool process could not be started."""

    exit_code = EXIT_LAUNCH_FAILED


class ProcessTimeoutError(ProvisioningError):
    """The tool hit its deadline or was cancelled by shutdown."""

    exit_code = EXIT_TIMEOUT


class ProcessNonZeroExitError(ProvisioningError):
    """The tool exited with a nonzero code."""


class PublishError(Exception):
    """A status message could not be handed to (or delivered by) the bus."""
