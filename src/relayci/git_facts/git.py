# git.py
# Small, focused wrapper around the Git CLI.
# relayci only needs git to name a run: the correlation identifier that
# ties a notification back to the commit that triggered it.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

LOCAL_CORRELATION_ID = "local"


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this
    file. A non-zero exit raises subprocess.CalledProcessError; a missing git
    binary raises FileNotFoundError.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    # `git rev-parse HEAD` resolves HEAD to its commit hash
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes
    (modified, staged or untracked files).
    """
    # Any porcelain output at all means the tree is not clean.
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def correlation_id(cwd: Optional[str | Path] = None) -> str:
    """
    Default correlation identifier for a run:
      - "<sha>"        clean checkout
      - "<sha>-dirty"  uncommitted changes present
      - "local"        not a git repository / git not installed
    """
    try:
        sha = head_sha(cwd)
        return f"{sha}-dirty" if is_dirty(cwd) else sha
    except (subprocess.CalledProcessError, FileNotFoundError):
        return LOCAL_CORRELATION_ID
