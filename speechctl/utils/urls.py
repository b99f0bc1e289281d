"""speechctl - Source location helpers.

Manifest and artifact locations are either network URLs (http, https) or
local files (file:// URLs or plain paths). Relative artifact locations are
resolved against the manifest's own location.
"""

from pathlib import Path
from urllib.parse import urljoin, urlparse
from urllib.request import url2pathname

NETWORK_SCHEMES = frozenset({"http", "https"})


def _scheme(source: str) -> str:
    scheme = urlparse(source).scheme.lower()
    # A single letter is a Windows drive, not a scheme
    return "" if len(scheme) == 1 else scheme


def is_network_source(source: str) -> bool:
    """Return True if reading ``source`` requires network access."""
    return _scheme(source) in NETWORK_SCHEMES


def to_local_path(source: str) -> Path:
    """Convert a file:// URL or plain path to a Path.

    Raises:
        ValueError: If ``source`` uses a scheme other than file.
    """
    scheme = _scheme(source)
    if scheme == "file":
        return Path(url2pathname(urlparse(source).path))
    if scheme:
        raise ValueError(f"Unsupported source scheme '{scheme}' in {source}")
    return Path(source).expanduser()


def resolve_location(base: str, location: str) -> str:
    """Resolve an artifact ``location`` relative to the manifest ``base``."""
    if _scheme(location) or Path(location).is_absolute():
        return location
    if _scheme(base):
        return urljoin(base, location)
    return str(Path(base).expanduser().resolve().parent / location)
