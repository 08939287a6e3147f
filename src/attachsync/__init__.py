"""AttachSync - offline-first attachment synchronization."""

__version__ = "0.1.0"
