# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
bkman Exceptions - Custom exceptions for the bkman package.
"""


class BkmanError(Exception):
    """Base exception for all bkman errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(BkmanError):
    """Raised when configuration is invalid or incomplete."""

    pass


class ToolNotFoundError(BkmanError):
    """Raised when an external tool cannot be resolved on the search path."""

    pass


class ToolExecutionError(BkmanError):
    """Raised when an external tool ran but its output shows a failure."""

    pass


class TransferError(BkmanError):
    """Raised when streaming to or from storage fails."""

    pass


class VerificationError(BkmanError):
    """Raised when a produced artifact is unusable even though the tool exited."""

    pass


class NotFoundError(BkmanError):
    """Raised when a requested artifact does not exist in storage."""

    pass
