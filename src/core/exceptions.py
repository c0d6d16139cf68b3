"""
Core Exceptions
================

Custom exceptions for the service.

Startup errors carry the phase that failed so the entry point can log a
single diagnostic naming it before exiting. Messages never include the
connection string.
"""

from typing import Optional


class StartupPhase(str):
    """Startup phases named in fatal diagnostics."""
    CONFIGURATION = "configuration"
    CONNECT = "connect"
    MIGRATION = "migration"
    PROBE = "probe"


class ApplicationException(Exception):
    """Base exception for all application errors."""

    phase: Optional[str] = None

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationException(ApplicationException):
    """Exception for missing or invalid configuration."""

    phase = StartupPhase.CONFIGURATION


class DatabaseException(ApplicationException):
    """Base exception for connection-pool lifecycle failures."""

    phase = StartupPhase.CONNECT


class ConnectTimeoutException(DatabaseException):
    """The database did not accept connections before the connect deadline."""

    def __init__(self, timeout_secs: float, details: Optional[dict] = None):
        self.timeout_secs = timeout_secs
        super().__init__(
            f"Timed out connecting to database after {timeout_secs}s",
            details or {"timeout_secs": timeout_secs}
        )


class DatabaseConnectionException(DatabaseException):
    """The database refused or failed the initial connection."""


class MigrationException(DatabaseException):
    """A schema migration could not be applied or verified."""

    phase = StartupPhase.MIGRATION

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.version = version
        if version is not None:
            message = f"Migration {version}: {message}"
        super().__init__(message, details)


class ProbeException(DatabaseException):
    """The liveness query could not be executed."""

    phase = StartupPhase.PROBE
