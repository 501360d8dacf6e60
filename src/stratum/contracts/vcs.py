"""VCS protocol consumed by the checkout orchestrator."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class VCS(Protocol):
    """Minimal version-control capability.

    Implementations raise VCSError on any failure.
    """

    def current_branch(self) -> str:
        """Name of the currently checked-out branch."""
        ...

    def file_content_at(self, ref: str, path: str) -> bytes:
        """Raw content of a repository-relative path at the given ref."""
        ...

    def switch_to(self, branch: str) -> None:
        """Switch the working tree to the given branch."""
        ...
