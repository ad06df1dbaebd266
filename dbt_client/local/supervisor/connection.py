import os
from enum import Enum
from types import MappingProxyType
from dataclasses import dataclass, field
from urllib.parse import urlparse
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


class ConnectionState(Enum):
    """Lifecycle states of the connection to the analyzer process."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class DocumentFilter:
    """Selects open documents by URI scheme and language id."""
    scheme: str
    language: str

    def matches(self, uri: str, language_id: str) -> bool:
        scheme = urlparse(uri).scheme or "file"
        return scheme == self.scheme and language_id == self.language


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Everything needed to launch the analyzer and route editor events to it.
    Built once per activation and never mutated afterwards.
    """
    executable: str
    arguments: Tuple[str, ...] = ()
    environment_overrides: Mapping[str, str] = field(default_factory=dict)
    document_filter: Tuple[DocumentFilter, ...] = ()
    watched_file_patterns: Tuple[str, ...] = ()
    client_id: str = "language-server"
    client_name: str = "Language Server"

    def __post_init__(self):
        if not self.executable or not str(self.executable).strip():
            raise ValueError("The analyzer executable must not be empty.")
        for name in ("arguments", "watched_file_patterns"):
            if isinstance(getattr(self, name), str):
                raise ValueError(f"{name} must be a sequence of strings, not a single string.")
        # Freeze the containers so the config stays a value.
        object.__setattr__(self, "environment_overrides",
                           MappingProxyType({str(k): str(v) for k, v in dict(self.environment_overrides).items()}))
        object.__setattr__(self, "arguments", tuple(str(a) for a in self.arguments))
        object.__setattr__(self, "document_filter", tuple(dict.fromkeys(self.document_filter)))
        object.__setattr__(self, "watched_file_patterns", tuple(dict.fromkeys(self.watched_file_patterns)))

    def merged_environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Returns the inherited environment with the overrides applied on top.

        :param base: The environment to inherit from. Defaults to `os.environ`.
        :return: A new dictionary suitable for `subprocess.Popen(env=...)`.
        """
        environment = dict(os.environ if base is None else base)
        environment.update(self.environment_overrides)
        return environment

    def in_scope(self, uri: str, language_id: str) -> bool:
        """Checks whether an open document is routed to this connection."""
        return any(f.matches(uri, language_id) for f in self.document_filter)


def _document_filters(selector: Iterable[Any]) -> Tuple[DocumentFilter, ...]:
    filters = []
    for entry in selector:
        if isinstance(entry, DocumentFilter):
            filters.append(entry)
        elif isinstance(entry, Mapping):
            filters.append(DocumentFilter(scheme=entry["scheme"], language=entry["language"]))
        else:
            scheme, language = entry
            filters.append(DocumentFilter(scheme=scheme, language=language))
    return tuple(filters)


def build_connection_config(settings: Any, debug: bool = False) -> ConnectionConfig:
    """
    Builds the immutable connection config from a settings object.

    :param settings: Any object exposing the uppercase keys of `settings.py`.
    :param debug: If True, the debug executable is launched instead of the run executable.
    :return: The ConnectionConfig for one activation.
    """
    executable = settings.SERVER_DEBUG_EXECUTABLE if debug else settings.SERVER_EXECUTABLE
    return ConnectionConfig(
        executable=executable,
        arguments=settings.SERVER_ARGS or (),
        environment_overrides=dict(settings.SERVER_ENV_OVERRIDES or {}),
        document_filter=_document_filters(settings.DOCUMENT_SELECTOR or ()),
        watched_file_patterns=settings.WATCHED_FILE_PATTERNS or (),
        client_id=settings.CLIENT_ID,
        client_name=settings.CLIENT_NAME,
    )
