"""speechctl - Manifest fetcher service.

Retrieves and parses release manifests from URLs or local files.
"""

__all__: list[str] = []
