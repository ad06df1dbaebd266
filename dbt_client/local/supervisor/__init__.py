"""
The Supervisor package.
Manages the lifecycle of the connection to the external analyzer process.

This package contains the central LanguageClientSupervisor class and its helper
modules, which together handle launching, watching, configuring and stopping
the analyzer.
"""
from .connection import ConnectionConfig, ConnectionState, DocumentFilter, build_connection_config
from .errors import InvalidState, LaunchFailure, ShutdownTimeout, SupervisorError
from .supervisor import LanguageClientSupervisor

__all__ = [
    'LanguageClientSupervisor',
    'ConnectionConfig', 'ConnectionState', 'DocumentFilter', 'build_connection_config',
    'SupervisorError', 'LaunchFailure', 'ShutdownTimeout', 'InvalidState',
]
