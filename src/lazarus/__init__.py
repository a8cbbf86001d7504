"""lazarus — recovery coordination for long-running agent sessions."""

__version__ = "0.1.0"
