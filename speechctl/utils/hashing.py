"""speechctl - Hashing utilities.

Manifest digests are algorithm-tagged ("sha256:<hex>"). The helpers here
split and join the tag; the hash functions themselves return HEX DIGEST ONLY.
"""

import hashlib
import hmac
from pathlib import Path

# Algorithms accepted in manifest digests, mapped to their hex digest length
SUPPORTED_DIGEST_ALGORITHMS = {
    "sha256": 64,
    "sha512": 128,
}

HASH_CHUNK_SIZE = 65536


def parse_digest(tagged: str) -> tuple[str, str]:
    """Split an algorithm-tagged digest into (algorithm, hex).

    Args:
        tagged: Digest string such as "sha256:9f86d0...".

    Returns:
        Tuple of (algorithm, lowercase hex digest).

    Raises:
        ValueError: If the tag is missing, the algorithm is unsupported,
            or the hex part has the wrong length or alphabet.
    """
    algorithm, sep, hex_digest = tagged.partition(":")
    if not sep:
        raise ValueError(f"Digest must be algorithm-tagged (e.g. 'sha256:...'), got '{tagged}'")
    algorithm = algorithm.strip().lower()
    hex_digest = hex_digest.strip().lower()

    expected_len = SUPPORTED_DIGEST_ALGORITHMS.get(algorithm)
    if expected_len is None:
        raise ValueError(f"Unsupported digest algorithm '{algorithm}'")
    if len(hex_digest) != expected_len or any(c not in "0123456789abcdef" for c in hex_digest):
        raise ValueError(f"Expected a {expected_len}-character hex {algorithm} digest, got '{hex_digest}'")
    return algorithm, hex_digest


def format_digest(algorithm: str, hex_digest: str) -> str:
    """Join an algorithm and hex digest into the tagged form."""
    return f"{algorithm.lower()}:{hex_digest.lower()}"


def new_hasher(tagged: str):
    """Create a hashlib object matching the algorithm of a tagged digest."""
    algorithm, _ = parse_digest(tagged)
    return hashlib.new(algorithm)


def digests_equal(tagged_a: str, tagged_b: str) -> bool:
    """Compare two tagged digests (algorithm and value) in constant time."""
    algo_a, hex_a = parse_digest(tagged_a)
    algo_b, hex_b = parse_digest(tagged_b)
    return algo_a == algo_b and hmac.compare_digest(hex_a, hex_b)


def file_digest(path: str | Path, algorithm: str = "sha256") -> str:
    """Compute the hex digest of a file.

    Args:
        path: Path to the file to hash.
        algorithm: hashlib algorithm name (default: sha256).

    Returns:
        Hex digest (lowercase, no prefix).

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    path = Path(path)
    hasher = hashlib.new(algorithm)

    with open(path, "rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            hasher.update(chunk)

    return hasher.hexdigest()


def short_digest(tagged: str, length: int = 12) -> str:
    """First ``length`` hex characters of a tagged digest (used in directory names)."""
    _, hex_digest = parse_digest(tagged)
    return hex_digest[:length]
