"""Client-side sync primitives: HTTP client, backoff policy and watcher."""

from adpipe.client.backoff import BackoffPolicy
from adpipe.client.http import PipelineClient
from adpipe.client.watcher import ProjectWatcher

__all__ = ["BackoffPolicy", "PipelineClient", "ProjectWatcher"]
