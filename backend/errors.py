"""
Error taxonomy for the automation backend.

Capture, gateway and configuration errors end the current turn. Command errors
are raised by the dispatcher and trigger one error-correction attempt.
UnparsableResponseError never leaves the response parser.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class AutomationError(Exception):
    """Base class for every error raised by the automation stack."""


class ConfigurationError(AutomationError):
    """Raised when a required setting (endpoint, credential, model, adb) is missing."""


class TransportError(AutomationError):
    """Raised when an adb command fails or the device is unreachable."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        detail = message
        if returncode is not None:
            detail += f" (exit code {returncode})"
        if stderr:
            detail += f": {stderr.strip()}"
        super().__init__(detail)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr


class CaptureError(TransportError):
    """Raised when a screenshot or layout capture fails."""


class MalformedCaptureError(CaptureError):
    """Raised when a layout capture has no usable root node."""


class GatewayError(AutomationError):
    """Raised when the model endpoint returns an error or no response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message if status_code is None else f"{message} (status {status_code})")
        self.status_code = status_code


class UnparsableResponseError(AutomationError):
    """Raised internally when no JSON object can be extracted from model output."""


class CommandError(AutomationError):
    """Base class for dispatcher errors."""


class UnknownCommandError(CommandError):
    """Raised for a command whose type tag is not part of the grammar."""


class InvalidCommandError(CommandError):
    """Raised for a command missing a required field."""


class CompositeCommandError(CommandError):
    """Raised when an inner command of a composite fails.

    ``result`` holds the partial composite result: the successful inner results
    followed by the failing entry.
    """

    def __init__(self, message: str, result: Dict[str, Any]) -> None:
        super().__init__(message)
        self.result = result


class MaxTurnsExceeded(AutomationError):
    """Raised when an instruction needs more continuation rounds than allowed."""
