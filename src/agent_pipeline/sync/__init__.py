"""External tag synchronization.

- GitHubClient: async GitHub REST client for issue labels
- TagSystem: protocol for idempotent tag add/remove/list
- GitHubLabelTagSystem: TagSystem backed by GitHub issue labels
- ExternalSyncAdapter: applies phase effects with bounded retry
"""

from agent_pipeline.sync.adapter import (
    ExternalSyncAdapter,
    GitHubLabelTagSystem,
    PermanentTagError,
    TagSystem,
    TagSystemError,
    TransientTagError,
)
from agent_pipeline.sync.client import GitHubAPIError, GitHubClient, RateLimitError

__all__ = [
    "ExternalSyncAdapter",
    "GitHubAPIError",
    "GitHubClient",
    "GitHubLabelTagSystem",
    "PermanentTagError",
    "RateLimitError",
    "TagSystem",
    "TagSystemError",
    "TransientTagError",
]
