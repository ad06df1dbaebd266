"""
This module contains the static configuration settings for the DBT language client.
It defines the analyzer executable, the environment handed to it, which documents
and files are routed to it, and the timeouts that bound its lifecycle.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
OVERRIDES_JSON_PATH = BASE_DIR / "overrides.json"

#* --- Client Identity ---
CLIENT_ID = "dbt-language-server"
CLIENT_NAME = "DBT Language Server"

#* --- Analyzer Executable ---
# No discovery is performed; the value is handed to the OS launcher as-is.
SERVER_EXECUTABLE = os.getenv("DBT_LSP_PATH", "dbt-lsp")
SERVER_DEBUG_EXECUTABLE = os.getenv("DBT_LSP_DEBUG_PATH", SERVER_EXECUTABLE)
SERVER_ARGS = []

# Merged on top of the inherited process environment.
SERVER_ENV_OVERRIDES = {
    "RUST_LOG": os.getenv("RUST_LOG", "debug"),
}

#* --- Routing ---
# (scheme, language-id) pairs of the documents handled by the analyzer.
DOCUMENT_SELECTOR = [
    ("file", "sql"),
]
WATCHED_FILE_PATTERNS = [
    "**/.clientrc",
]

#* --- Lifecycle Settings ---
READY_TIMEOUT = 10              # seconds to wait for the start acknowledgement
READY_SETTLE_SECONDS = 1        # liveness window before a bare process counts as ready
GRACEFUL_SHUTDOWN_TIMEOUT = 10  # seconds before force-killing
FORCED_KILL_TIMEOUT = 3
READY_POLL_INTERVAL = 0.05

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "SERVER_EXECUTABLE", "SERVER_DEBUG_EXECUTABLE", "SERVER_ARGS", "SERVER_ENV_OVERRIDES",
    "WATCHED_FILE_PATTERNS",
    "READY_TIMEOUT", "READY_SETTLE_SECONDS",
    "GRACEFUL_SHUTDOWN_TIMEOUT", "FORCED_KILL_TIMEOUT",
}
