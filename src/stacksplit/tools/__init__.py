"""Adapters around git, the validation gate and the code host."""

from .gates import Check, Validator
from .hosting import CodeHost, GitHubHost, HostingError, RemoteCheck
from .vcs import GitCheckpoint, GitError, GitRepository

__all__ = [
    "Check",
    "CodeHost",
    "GitCheckpoint",
    "GitError",
    "GitHubHost",
    "GitRepository",
    "HostingError",
    "RemoteCheck",
    "Validator",
]
