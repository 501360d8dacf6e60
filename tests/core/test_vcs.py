"""Tests for GitVCS against a real scratch repository."""

import shutil
import subprocess
from pathlib import Path

import pytest

from stratum.contracts.errors import VCSError

pytestmark = [
    pytest.mark.git,
    pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available"),
]


def _git(repo: Path, *args: str) -> None:
    subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """Repository with main (one plan) and feature (plan with an extra line)."""
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "checkout", "-q", "-b", "main")
    _git(tmp_path, "config", "user.email", "ann@example.com")
    _git(tmp_path, "config", "user.name", "Ann Planner")
    (tmp_path / "stratum.plan").write_text("%project=flipr\n")
    _git(tmp_path, "add", "stratum.plan")
    _git(tmp_path, "commit", "-q", "-m", "main plan")
    _git(tmp_path, "checkout", "-q", "-b", "feature")
    (tmp_path / "stratum.plan").write_text("%project=flipr\n%uri=feature\n")
    _git(tmp_path, "commit", "-q", "-am", "feature plan")
    _git(tmp_path, "checkout", "-q", "main")
    return tmp_path


class TestGitVCS:
    def test_current_branch(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        assert GitVCS(repo).current_branch() == "main"

    def test_file_content_at_reads_other_branch(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        content = GitVCS(repo).file_content_at("feature", "stratum.plan")
        assert content == b"%project=flipr\n%uri=feature\n"
        assert (repo / "stratum.plan").read_text() == "%project=flipr\n"

    def test_file_content_at_is_relative_to_work_tree(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        db = repo / "db"
        db.mkdir()
        (db / "stratum.plan").write_text("%project=nested\n")
        _git(repo, "checkout", "-q", "feature")
        _git(repo, "add", "db/stratum.plan")
        _git(repo, "commit", "-q", "-m", "nested plan")
        _git(repo, "checkout", "-q", "main")
        db.mkdir(exist_ok=True)  # git removes it with the feature-only file

        vcs = GitVCS(db)

        assert vcs.file_content_at("feature", "stratum.plan") == b"%project=nested\n"
        assert vcs.file_content_at("feature", str(db / "stratum.plan")) == b"%project=nested\n"
        assert vcs.file_content_at("feature", "../stratum.plan") == b"%project=flipr\n%uri=feature\n"

    def test_switch_to(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        vcs = GitVCS(repo)
        vcs.switch_to("feature")
        assert vcs.current_branch() == "feature"
        assert (repo / "stratum.plan").read_text() == "%project=flipr\n%uri=feature\n"

    def test_unknown_ref_raises(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        with pytest.raises(VCSError, match="failed with exit code"):
            GitVCS(repo).file_content_at("nope", "stratum.plan")

    def test_missing_executable_raises(self, repo: Path) -> None:
        from stratum.core.vcs import GitVCS

        with pytest.raises(VCSError, match="Cannot run"):
            GitVCS(repo, git="definitely-not-git").current_branch()
