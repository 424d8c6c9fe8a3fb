"""Para: a command-line programming assistant backed by a synced vector store."""

__version__ = "0.3.0"
