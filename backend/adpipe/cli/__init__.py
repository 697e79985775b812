"""Command-line interface for adpipe."""
