import psutil
import logging
from typing import List, Optional

log = logging.getLogger(__name__)


def collect_process_tree(proc: psutil.Process) -> List[psutil.Process]:
    """
    Returns the process and all of its descendants.

    :param proc: The root psutil.Process.
    :return: A list of psutil.Process objects, root first.
    """
    procs = [proc]
    try:
        procs.extend(proc.children(recursive=True))
    except psutil.NoSuchProcess:
        log.debug(f"Process {proc.pid} no longer exists, skipping children retrieval.")
    return procs


def _terminate_processes(processes: List[psutil.Process]) -> None:
    """Sends SIGTERM to all given processes."""
    for proc in processes:
        try:
            log.debug(f"Sending SIGTERM to PID {proc.pid}")
            proc.terminate()
        except psutil.NoSuchProcess:
            continue


def _forceful_kill(processes: List[psutil.Process]) -> None:
    """Forcefully kills processes that didn't terminate gracefully."""
    if not processes:
        return

    log.warning(f"{len(processes)} processes did not terminate gracefully. Forcing shutdown...")
    for proc in processes:
        try:
            log.warning(f"Killing stubborn process PID {proc.pid}.")
            proc.kill()
        except psutil.NoSuchProcess:
            continue


def terminate_process_tree(proc: Optional[psutil.Process], timeout: float) -> None:
    """
    Terminates a process and its descendants, escalating to SIGKILL.

    :param proc: The root psutil.Process, or None if it is already gone.
    :param timeout: Seconds to wait after SIGTERM before killing survivors.
    """
    if proc is None:
        return

    procs = collect_process_tree(proc)
    _terminate_processes(procs)

    try:
        _, alive = psutil.wait_procs(procs, timeout=timeout)
    except psutil.TimeoutExpired:
        alive = procs
    except psutil.NoSuchProcess:
        alive = []

    # If any processes are still alive after the timeout, forcefully kill them.
    _forceful_kill(alive)
    if alive:
        psutil.wait_procs(alive, timeout=timeout)
