import sys
import time
import logging
from pathlib import Path
from typing import List, Optional

import setproctitle

from dbt_client.log.setup import setup_logging
from dbt_client.local import effective_settings
from dbt_client.local.supervisor import LanguageClientSupervisor, LaunchFailure
from dbt_client.local.supervisor.host import WorkspaceHost

log = logging.getLogger("console")

USAGE = "Usage: python -m dbt_client [--verbose] [--debug] [WORKSPACE]"


def run(workspace: Path, verbose: bool = False, debug: bool = False) -> int:
    """
    Runs the language client against a workspace until interrupted.

    :param workspace: The directory whose files are watched.
    :param verbose: If True, sets console logging to DEBUG level.
    :param debug: If True, launches the debug executable.
    :return: The process exit code.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    host = WorkspaceHost(workspace)
    supervisor = LanguageClientSupervisor(effective_settings, debug=debug)

    try:
        supervisor.activate(host)
    except LaunchFailure:
        return 1

    try:
        while supervisor.process is not None and not supervisor.process.has_exited:
            time.sleep(0.5)
        log.warning("The analyzer is no longer running.")
    except KeyboardInterrupt:
        log.info("Interrupted by user.")
    finally:
        supervisor.deactivate()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the console application."""
    args = list(sys.argv[1:] if argv is None else argv)
    if "-h" in args or "--help" in args:
        print(USAGE)
        return 0

    verbose = "--verbose" in args
    debug = "--debug" in args
    positional = [a for a in args if not a.startswith("--")]
    if len(positional) > 1:
        print(USAGE)
        return 2
    workspace = Path(positional[0]) if positional else Path.cwd()
    if not workspace.is_dir():
        print(f"Workspace '{workspace}' is not a directory.")
        return 2

    setproctitle.setproctitle(f"{effective_settings.CLIENT_NAME} - Client")
    return run(workspace, verbose=verbose, debug=debug)


if __name__ == "__main__":
    sys.exit(main())
