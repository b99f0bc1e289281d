"""speechctl - Error taxonomy.

Every failure the core reports carries a stable error code. The CLI shell
maps codes to exit code classes so automation can branch on outcome, and
--json output carries the code rather than only a human string.

Exit code classes:
- USAGE (2): bad flags, or the request cannot be satisfied by the manifest
- NETWORK (3): network, offline, or manifest retrieval/format failures
- INTEGRITY (4): digest mismatch or unsafe archive content
- INTERNAL (5): store corruption, lock timeout, cancellation, internal errors
"""

from enum import IntEnum, StrEnum


class ErrorCode(StrEnum):
    """Error codes reported by the installer core."""

    OFFLINE_REQUIRED = "OFFLINE_REQUIRED"
    UNSUPPORTED_MANIFEST = "UNSUPPORTED_MANIFEST"
    MANIFEST_INVALID = "MANIFEST_INVALID"
    NETWORK_ERROR = "NETWORK_ERROR"
    NO_ARTIFACT_FOR_PLATFORM = "NO_ARTIFACT_FOR_PLATFORM"
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
    VARIANT_NOT_FOUND = "VARIANT_NOT_FOUND"
    INTEGRITY_CHECK_FAILED = "INTEGRITY_CHECK_FAILED"
    UNSAFE_ARCHIVE_ENTRY = "UNSAFE_ARCHIVE_ENTRY"
    CANCELLED = "CANCELLED"
    STORE_CORRUPT = "STORE_CORRUPT"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    LOCK_LOST = "LOCK_LOST"
    USAGE_ERROR = "USAGE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ExitCode(IntEnum):
    """Process exit code classes."""

    OK = 0
    USAGE = 2
    NETWORK = 3
    INTEGRITY = 4
    INTERNAL = 5


_EXIT_CLASSES = {
    ErrorCode.USAGE_ERROR: ExitCode.USAGE,
    ErrorCode.NO_ARTIFACT_FOR_PLATFORM: ExitCode.USAGE,
    ErrorCode.DEVICE_UNAVAILABLE: ExitCode.USAGE,
    ErrorCode.VARIANT_NOT_FOUND: ExitCode.USAGE,
    ErrorCode.OFFLINE_REQUIRED: ExitCode.NETWORK,
    ErrorCode.NETWORK_ERROR: ExitCode.NETWORK,
    ErrorCode.UNSUPPORTED_MANIFEST: ExitCode.NETWORK,
    ErrorCode.MANIFEST_INVALID: ExitCode.NETWORK,
    ErrorCode.INTEGRITY_CHECK_FAILED: ExitCode.INTEGRITY,
    ErrorCode.UNSAFE_ARCHIVE_ENTRY: ExitCode.INTEGRITY,
    ErrorCode.STORE_CORRUPT: ExitCode.INTERNAL,
    ErrorCode.LOCK_TIMEOUT: ExitCode.INTERNAL,
    ErrorCode.LOCK_LOST: ExitCode.INTERNAL,
    ErrorCode.CANCELLED: ExitCode.INTERNAL,
    ErrorCode.INTERNAL_ERROR: ExitCode.INTERNAL,
}


def exit_code_for(error_code: str) -> ExitCode:
    """Map an error code to its exit code class (unknown codes are INTERNAL)."""
    try:
        return _EXIT_CLASSES[ErrorCode(error_code)]
    except ValueError:
        return ExitCode.INTERNAL


class SpeechctlError(Exception):
    """Base exception for installer errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for(self.error_code)


class OfflineRequiredError(SpeechctlError):
    """Offline mode was requested but the source needs the network."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(
            ErrorCode.OFFLINE_REQUIRED,
            f"Network access required for {source} but --offline was set",
        )


class UnsupportedManifestError(SpeechctlError):
    """Manifest schemaVersion is not understood by this engine."""

    def __init__(self, schema_version: object, supported: frozenset[int] | set[int]):
        self.schema_version = schema_version
        super().__init__(
            ErrorCode.UNSUPPORTED_MANIFEST,
            f"Manifest schemaVersion {schema_version!r} is not supported "
            f"(supported: {sorted(supported)})",
        )


class ManifestInvalidError(SpeechctlError):
    """Manifest document is malformed or fails schema validation."""

    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(ErrorCode.MANIFEST_INVALID, f"Invalid manifest {source}: {reason}")


class NetworkError(SpeechctlError):
    """Transfer failed after all retries (or with a non-retryable HTTP status)."""

    def __init__(self, url: str, reason: str):
        self.url = url
        super().__init__(ErrorCode.NETWORK_ERROR, f"Failed to fetch {url}: {reason}")


class NoArtifactForPlatformError(SpeechctlError):
    """No artifact matches the host OS/architecture."""

    def __init__(self, component: str, os_name: str, arch: str):
        super().__init__(
            ErrorCode.NO_ARTIFACT_FOR_PLATFORM,
            f"No {component} artifact for platform {os_name}/{arch}",
        )


class DeviceUnavailableError(SpeechctlError):
    """An explicitly requested device has no matching artifact."""

    def __init__(self, component: str, device: str, variant: str, available: list[str]):
        self.device = device
        super().__init__(
            ErrorCode.DEVICE_UNAVAILABLE,
            f"No {device} artifact for {component} variant '{variant}' "
            f"(available: {', '.join(available) or 'none'})",
        )


class VariantNotFoundError(SpeechctlError):
    """Requested model/voice is not in the manifest for this platform."""

    def __init__(self, component: str, variant: str, available: list[str]):
        self.variant = variant
        super().__init__(
            ErrorCode.VARIANT_NOT_FOUND,
            f"Variant '{variant}' not found for {component} "
            f"(available: {', '.join(available) or 'none'})",
        )


class IntegrityCheckFailedError(SpeechctlError):
    """Downloaded content does not match the declared digest or size."""

    def __init__(self, name: str, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            ErrorCode.INTEGRITY_CHECK_FAILED,
            f"Integrity check failed for {name} (expected {expected}, got {actual})",
        )


class UnsafeArchiveEntryError(SpeechctlError):
    """Archive contains an entry that would escape the unpack directory."""

    def __init__(self, entry: str, reason: str):
        self.entry = entry
        super().__init__(ErrorCode.UNSAFE_ARCHIVE_ENTRY, f"Unsafe archive entry '{entry}': {reason}")


class CancelledError(SpeechctlError):
    """Operation was cancelled or timed out."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(ErrorCode.CANCELLED, f"Operation cancelled: {reason}")


class StoreCorruptError(SpeechctlError):
    """Install store cannot be read. Never treated as empty."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(
            ErrorCode.STORE_CORRUPT,
            f"Install store {path} is unreadable ({reason}); run 'speechctl check --repair'",
        )


class LockTimeoutError(SpeechctlError):
    """Another invocation held the install lock for too long."""

    def __init__(self, component: str, variant: str, waited_seconds: float):
        super().__init__(
            ErrorCode.LOCK_TIMEOUT,
            f"Timed out after {waited_seconds:.0f}s waiting for install lock on {component}/{variant}",
        )


class LockLostError(SpeechctlError):
    """The install lock was reclaimed by another invocation before the record commit."""

    def __init__(self, component: str, variant: str):
        super().__init__(
            ErrorCode.LOCK_LOST,
            f"Install lock on {component}/{variant} was taken over by another invocation; nothing was recorded",
        )


class UsageError(SpeechctlError):
    """Invalid argument passed to the core."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.USAGE_ERROR, message)
