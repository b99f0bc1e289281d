"""speechctl - Download & verify worker.

Streams artifacts into staging, verifies digests, unpacks archives safely,
and publishes verified installs.
"""

__all__: list[str] = []
