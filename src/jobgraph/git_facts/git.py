# git.py
# Thin wrapper around the Git CLI, used to fill in trigger context defaults
# (branch, commit, actor) when the caller does not pass them explicitly.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Current branch name, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def user_name(cwd: Optional[str] = None) -> Optional[str]:
    try:
        return _git(["config", "user.name"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def repo_facts(cwd: Optional[str] = None) -> dict:
    """
    Best-effort branch/sha/actor for the repository at `cwd`.

    Missing git or a non-repository directory yields an empty dict.
    """
    try:
        return {
            "branch": current_branch(cwd),
            "sha": head_sha(cwd),
            "actor": user_name(cwd),
        }
    except (subprocess.CalledProcessError, FileNotFoundError):
        return {}
