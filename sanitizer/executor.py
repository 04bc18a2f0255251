import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from .config import MappingStore
from .substitution import apply_with_fallback, reverse_apply
from .sync import sync_tree
from .utils import ExecError, audit


def _exit_status(returncode: int) -> int:
    # Negative return codes mean the child died from a signal.
    if returncode < 0:
        return 128 - returncode
    return returncode


def run_real(command, store: Optional[MappingStore] = None, project_root=None, stream=None) -> int:
    """Run ``command`` against the shadow tree with real values restored.

    The shadow tree is refreshed from the project first, the command string
    itself is restored, and the combined output is sanitized (with the IPv4
    fallback) before being written to ``stream``. Returns the child's exit
    status.
    """
    if not str(command or "").strip():
        raise ExecError("A command to execute is required.")

    store = store or MappingStore()
    stream = stream or sys.stdout
    config = store.load()
    root = Path(project_root or os.getcwd()).resolve()
    shadow = config.expand_shadow_path(root.name)
    try:
        shadow.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ExecError(f"Cannot create shadow tree {shadow}: {exc}")

    reverse = config.mappings.reverse()
    sync_tree(root, shadow, config.skip_paths, transform=lambda text: reverse_apply(text, reverse))

    argv = list(config.exec_shell) + [reverse_apply(command, reverse)]
    audit("EXEC", f"running in {shadow} via {argv[0]}", "INFO")
    try:
        result = subprocess.run(argv, cwd=str(shadow), capture_output=True)
    except OSError as exc:
        raise ExecError(f"Cannot start {argv[0]}: {exc}")

    # stdout then stderr; interleaving between the two is not preserved.
    output = result.stdout.decode("utf-8", errors="replace") + result.stderr.decode("utf-8", errors="replace")
    stream.write(apply_with_fallback(output, config.mappings.all()))
    stream.flush()

    status = _exit_status(result.returncode)
    if status != 0:
        audit("EXEC", f"command exited with status {status}", "FAILED")
    return status
