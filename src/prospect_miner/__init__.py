"""Core package for the prospect mining engine.

This package houses the long-running lead mining jobs: the job registry,
the per-job polling workers, lead deduplication, and the environment
scoped storage/audit layer they persist through.
"""

__all__ = [
    "__version__",
]

__version__ = "0.1.0"
