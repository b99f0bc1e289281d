"""Tests for manifest contract invariants.

The JSON Schema covers document shape. The pydantic models cover what the
schema cannot express:
- digests are normalized to lowercase algorithm-tagged form
- artifact keys (component, os, arch, device, variant) are reported when duplicated
- file names default to the last URL path segment
"""

import pytest
from pydantic import ValidationError

from speechctl.contracts import MANIFEST_SCHEMA, schema_errors
from speechctl.schemas import Artifact, Manifest

DIGEST = "sha256:" + "0f" * 32


@pytest.fixture
def valid_manifest():
    """Minimal valid manifest document."""
    return {
        "schemaVersion": 1,
        "releaseVersion": "2024.06.1",
        "defaultVariants": {"stt": "base.en"},
        "artifacts": [
            {
                "component": "stt",
                "os": "linux",
                "arch": "amd64",
                "device": "cpu",
                "variant": "base.en",
                "url": "https://example.test/stt/ggml-base.en.bin",
                "sizeBytes": 1024,
                "digest": DIGEST,
            }
        ],
    }


class TestManifestSchema:
    """Tests for specs/manifest.schema.json."""

    def test_valid_manifest_passes(self, valid_manifest):
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA) == []

    def test_missing_release_version_fails(self, valid_manifest):
        del valid_manifest["releaseVersion"]
        errors = schema_errors(valid_manifest, MANIFEST_SCHEMA)
        assert any("releaseVersion" in e for e in errors)

    def test_untagged_digest_fails(self, valid_manifest):
        valid_manifest["artifacts"][0]["digest"] = "0f" * 32
        errors = schema_errors(valid_manifest, MANIFEST_SCHEMA)
        assert errors and errors[0].startswith("artifacts/0/digest")

    def test_unknown_device_fails(self, valid_manifest):
        valid_manifest["artifacts"][0]["device"] = "tpu"
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA)

    def test_file_name_with_separator_fails(self, valid_manifest):
        """fileName must be a bare name so it cannot escape staging."""
        valid_manifest["artifacts"][0]["fileName"] = "../evil.bin"
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA)

    def test_variant_with_slash_fails(self, valid_manifest):
        valid_manifest["artifacts"][0]["variant"] = "a/b"
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA)

    def test_parts_are_validated(self, valid_manifest):
        valid_manifest["artifacts"][0]["parts"] = [{"role": "runtime", "url": "x", "sizeBytes": -1, "digest": DIGEST}]
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA)

    def test_unknown_fields_are_allowed(self, valid_manifest):
        """Additive fields must not break older readers."""
        valid_manifest["artifacts"][0]["license"] = "MIT"
        assert schema_errors(valid_manifest, MANIFEST_SCHEMA) == []


class TestManifestModel:
    """Tests for the Manifest / Artifact pydantic models."""

    def test_parses_aliases(self, valid_manifest):
        manifest = Manifest.model_validate(valid_manifest)
        artifact = manifest.artifacts[0]
        assert manifest.release_version == "2024.06.1"
        assert manifest.default_variants == {"stt": "base.en"}
        assert artifact.size_bytes == 1024
        assert artifact.unpack_kind == "file"

    def test_digest_normalized_to_lowercase(self, valid_manifest):
        valid_manifest["artifacts"][0]["digest"] = DIGEST.upper().replace("SHA256", "sha256")
        manifest = Manifest.model_validate(valid_manifest)
        assert manifest.artifacts[0].digest == DIGEST

    def test_bad_digest_rejected(self, valid_manifest):
        valid_manifest["artifacts"][0]["digest"] = "md5:abc"
        with pytest.raises(ValidationError):
            Manifest.model_validate(valid_manifest)

    def test_file_name_defaults_to_url_basename(self, valid_manifest):
        artifact = Manifest.model_validate(valid_manifest).artifacts[0]
        assert artifact.resolved_file_name == "ggml-base.en.bin"

    def test_artifacts_are_immutable(self, valid_manifest):
        artifact = Manifest.model_validate(valid_manifest).artifacts[0]
        with pytest.raises(ValidationError):
            artifact.url = "https://elsewhere.test/x.bin"

    def test_duplicate_keys_reported(self, valid_manifest):
        duplicate = dict(valid_manifest["artifacts"][0], url="https://mirror.test/ggml-base.en.bin")
        valid_manifest["artifacts"].append(duplicate)
        manifest = Manifest.model_validate(valid_manifest)
        assert manifest.duplicate_keys() == [("stt", "linux", "amd64", "cpu", "base.en")]

    def test_all_parts_starts_with_primary(self, valid_manifest):
        valid_manifest["artifacts"][0]["parts"] = [
            {"role": "runtime", "url": "https://example.test/whisper-cli", "sizeBytes": 10, "digest": DIGEST}
        ]
        artifact = Artifact.model_validate(valid_manifest["artifacts"][0])
        parts = artifact.all_parts()
        assert [p.role for p in parts] == ["model", "runtime"]
        assert parts[0].url == artifact.url
        assert parts[1].resolved_file_name == "whisper-cli"
