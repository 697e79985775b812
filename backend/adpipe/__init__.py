"""Ad Pipeline - orchestration core for automated short-video ad generation.

Tracks which pipeline stage a project occupies, gates progress on human
review, rolls cancelled or failed work back to a safe checkpoint and
reports generation progress to polling clients.
"""

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
