"""speechctl - Speech asset installer core.

Provides:
- Release manifest model and JSON schemas in /specs (versioned contracts)
- SQLite install store (records + per-key locks)
- Artifact selection, download/verify, and atomic publish
- Core utilities: atomic_io, hashing, paths, failpoints
"""

__version__ = "0.1.0"
