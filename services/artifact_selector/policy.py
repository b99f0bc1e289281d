"""speechctl - Artifact Selector.

Chooses exactly one artifact from a manifest for the host platform, the
requested device and the requested variant. Pure: no I/O.

Selection order:
1. Exact OS/arch match (NO_ARTIFACT_FOR_PLATFORM otherwise)
2. Variant policy: explicit, manifest default, or the only candidate
3. Device policy: auto prefers gpu when the host has one, explicit never
   falls back
4. Tie-break among remaining candidates: highest sizeBytes, then manifest
   order (warned, not failed)

Each policy returns a tagged decision so callers can report why a variant
or device was chosen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum

from speechctl.errors import (
    DeviceUnavailableError,
    NoArtifactForPlatformError,
    UsageError,
    VariantNotFoundError,
)
from speechctl.schemas import COMPONENTS, DEVICES, Artifact, Manifest, PlatformFacts

logger = logging.getLogger(__name__)

AUTO_DEVICE = "auto"


class VariantOutcome(StrEnum):
    EXPLICIT = "explicit"
    MANIFEST_DEFAULT = "manifest_default"
    ONLY_CANDIDATE = "only_candidate"


class DeviceOutcome(StrEnum):
    EXPLICIT = "explicit"
    AUTO_GPU = "auto_gpu"
    AUTO_CPU = "auto_cpu"
    AUTO_CPU_FALLBACK = "auto_cpu_fallback"


@dataclass(frozen=True)
class VariantDecision:
    variant: str
    outcome: VariantOutcome


@dataclass(frozen=True)
class DeviceDecision:
    device: str
    outcome: DeviceOutcome


@dataclass(frozen=True)
class Selection:
    """The chosen artifact and how it was chosen."""

    artifact: Artifact
    variant: VariantDecision
    device: DeviceDecision
    warnings: list[str] = field(default_factory=list)


def resolve_variant(
    manifest: Manifest, component: str, candidates: list[Artifact], want_variant: str
) -> VariantDecision:
    """Resolve the requested variant against the platform candidates.

    An empty request resolves to the manifest's default for the component,
    then to the unnamed variant, then to the only variant on offer.
    """
    available = sorted({a.variant for a in candidates})

    if want_variant:
        if want_variant in available:
            return VariantDecision(want_variant, VariantOutcome.EXPLICIT)
        raise VariantNotFoundError(component, want_variant, available)

    default = manifest.default_variants.get(component)
    if default is not None:
        if default in available:
            return VariantDecision(default, VariantOutcome.MANIFEST_DEFAULT)
        raise VariantNotFoundError(component, default, available)

    if "" in available:
        return VariantDecision("", VariantOutcome.MANIFEST_DEFAULT)

    if len(available) == 1:
        return VariantDecision(available[0], VariantOutcome.ONLY_CANDIDATE)

    raise VariantNotFoundError(component, "", available)


def resolve_device(
    component: str, variant: str, candidates: list[Artifact], want_device: str, host_gpu: bool
) -> DeviceDecision:
    """Resolve the requested device against the variant's candidates."""
    available = sorted({a.device for a in candidates})

    if want_device == AUTO_DEVICE:
        if host_gpu and "gpu" in available:
            return DeviceDecision("gpu", DeviceOutcome.AUTO_GPU)
        if "cpu" in available:
            outcome = DeviceOutcome.AUTO_CPU_FALLBACK if host_gpu else DeviceOutcome.AUTO_CPU
            return DeviceDecision("cpu", outcome)
        raise DeviceUnavailableError(component, want_device, variant, available)

    if want_device not in DEVICES:
        raise UsageError(f"Unknown device '{want_device}' (expected auto, cpu or gpu)")

    if want_device in available:
        return DeviceDecision(want_device, DeviceOutcome.EXPLICIT)
    raise DeviceUnavailableError(component, want_device, variant, available)


def _break_tie(candidates: list[Artifact], warnings: list[str]) -> Artifact:
    if len(candidates) == 1:
        return candidates[0]

    # max() keeps the first maximal element, which is manifest order
    chosen = max(candidates, key=lambda a: a.size_bytes)
    message = (
        f"{len(candidates)} artifacts match {chosen.component}/{chosen.variant or 'default'} "
        f"on {chosen.os}/{chosen.arch}/{chosen.device}; using {chosen.url} ({chosen.size_bytes} bytes)"
    )
    logger.warning(message)
    warnings.append(message)
    return chosen


def select_artifact(
    manifest: Manifest,
    facts: PlatformFacts,
    want_device: str,
    want_variant: str,
    component: str,
) -> Selection:
    """Select exactly one artifact for ``component`` on this host.

    Args:
        manifest: Parsed release manifest.
        facts: Probed host facts.
        want_device: "auto", "cpu" or "gpu".
        want_variant: Requested model/voice name, "" for the default.
        component: "stt" or "tts".

    Returns:
        Selection with the artifact and tagged policy decisions.
    """
    if component not in COMPONENTS:
        raise UsageError(f"Unknown component '{component}' (expected stt or tts)")

    platform_candidates = [
        a
        for a in manifest.artifacts
        if a.component == component and a.os == facts.os and a.arch == facts.arch
    ]
    if not platform_candidates:
        raise NoArtifactForPlatformError(component, facts.os, facts.arch)

    variant = resolve_variant(manifest, component, platform_candidates, want_variant)
    variant_candidates = [a for a in platform_candidates if a.variant == variant.variant]

    device = resolve_device(component, variant.variant, variant_candidates, want_device, facts.gpu)
    device_candidates = [a for a in variant_candidates if a.device == device.device]

    warnings: list[str] = []
    artifact = _break_tie(device_candidates, warnings)

    logger.info(
        "Selected %s variant=%s (%s) device=%s (%s): %s",
        component,
        variant.variant or "default",
        variant.outcome,
        device.device,
        device.outcome,
        artifact.url,
    )
    return Selection(artifact=artifact, variant=variant, device=device, warnings=warnings)
