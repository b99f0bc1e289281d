"""speechctl - Artifact selector service.

Picks exactly one artifact for the host platform and the requested device/variant.
"""

__all__: list[str] = []
