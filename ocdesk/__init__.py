"""ocdesk: multi-project desk client for opencode agent servers."""

__version__ = "0.1.0"
