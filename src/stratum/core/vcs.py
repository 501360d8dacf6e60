# src/stratum/core/vcs.py
"""Git implementation of the VCS capability."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import structlog

from stratum.contracts.errors import VCSError

logger = structlog.get_logger(__name__)


class GitVCS:
    """Runs git in a working tree.

    Args:
        work_tree: Directory git commands run in (defaults to the current directory)
        git: git executable
        timeout: Seconds before a git command is abandoned
    """

    def __init__(self, work_tree: Path | None = None, *, git: str = "git", timeout: float = 60.0) -> None:
        self._work_tree = work_tree
        self._git = git
        self._timeout = timeout

    def _run(self, *args: str) -> bytes:
        command = [self._git, *args]
        try:
            result = subprocess.run(
                command,
                cwd=self._work_tree,
                capture_output=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise VCSError(f"Cannot run {' '.join(command)}: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise VCSError(f"{' '.join(command)} failed with exit code {result.returncode}: {stderr}")
        return result.stdout

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").decode("utf-8").strip()

    def file_content_at(self, ref: str, path: str) -> bytes:
        """Content of path at ref. Relative paths start at the work tree, as on disk."""
        return self._run("show", f"{ref}:{self._tree_path(path)}")

    def _tree_path(self, path: str) -> str:
        # git reads a bare ref:path from the repository root; ./ anchors it to cwd
        target = Path(path)
        if target.is_absolute():
            target = Path(os.path.relpath(target, self._work_tree or Path.cwd()))
        text = target.as_posix()
        if text.startswith("../"):
            return text
        return f"./{text}"

    def switch_to(self, branch: str) -> None:
        logger.info("vcs_switch", branch=branch)
        self._run("checkout", branch)
