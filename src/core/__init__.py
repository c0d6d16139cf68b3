"""
Core Module
============

Framework-agnostic building blocks shared across the service.
"""

from src.core.exceptions import (
    StartupPhase,
    ApplicationException,
    ConfigurationException,
    DatabaseException,
    ConnectTimeoutException,
    DatabaseConnectionException,
    MigrationException,
    ProbeException,
)

__all__ = [
    "StartupPhase",
    "ApplicationException",
    "ConfigurationException",
    "DatabaseException",
    "ConnectTimeoutException",
    "DatabaseConnectionException",
    "MigrationException",
    "ProbeException",
]
