"""Local task graph, progress log and delegated execution engine."""

__version__ = "0.3.0"
