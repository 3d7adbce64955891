import os
import subprocess
from typing import Dict, List, Optional

from warprelease.logger import get_console
from warprelease.src.core.errors import CancelledError
from warprelease.src.core.scheduler import CancellationToken

console = get_console()


def run_command(
    args: List[str],
    timeout: Optional[float] = None,
    cancel_token: Optional[CancellationToken] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a tool with stdout and stderr merged, killable through ``cancel_token``.

    Raises ``subprocess.TimeoutExpired`` (after killing the process) when
    ``timeout`` passes and ``CancelledError`` when the token fires.
    """
    console.log(f"[cyan]Running command:[/] {' '.join(args)}")
    process = subprocess.Popen(
        args,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        env={**os.environ, **env} if env else None,
        cwd=cwd,
    )

    def terminate():
        if process.poll() is None:
            process.terminate()

    if cancel_token is not None:
        cancel_token.add_callback(terminate)
    try:
        output, _ = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        output, _ = process.communicate()
        raise subprocess.TimeoutExpired(args, timeout, output=output)
    finally:
        if cancel_token is not None:
            cancel_token.remove_callback(terminate)

    if cancel_token is not None and cancel_token.is_cancelled:
        raise CancelledError(
            cancel_token.reason or f"{args[0]} cancelled",
            {"command": args[0], "returncode": process.returncode},
        )
    return subprocess.CompletedProcess(args, process.returncode, stdout=output or "", stderr="")


def first_error_line(output: str, markers=("error:", "ERROR", "Error")) -> Optional[str]:
    for line in (output or "").splitlines():
        if any(marker in line for marker in markers):
            return line.strip()
    return None
