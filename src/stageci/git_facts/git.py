# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to work out which ref a local run is for, so the rest of
# the codebase never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from typing import Optional, Tuple


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Branch name checked out, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """Tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def get_current_ref(cwd: Optional[str] = None) -> Tuple[str, str]:
    """
    Return (ref name, ref kind) for the checkout.

    A branch wins; a detached HEAD sitting on a tag is reported as that tag;
    otherwise the short commit SHA is used as a branch-like ref.
    """
    branch = current_branch(cwd=cwd)
    if branch:
        return branch, "branch"
    tag = exact_tag(cwd=cwd)
    if tag:
        return tag, "tag"
    return _git(["rev-parse", "--short", "HEAD"], cwd=cwd), "branch"
