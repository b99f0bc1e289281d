"""speechctl - Platform facts probe.

Resolves host OS, normalized architecture and GPU capability at runtime.
GPU capability is probed, never declared by the manifest. The probe is
best-effort: any failure reads as "no GPU", which only ever narrows `auto`
device selection to cpu.

SPEECH_FORCE_DEVICE=cpu|gpu overrides the probe (CI machines, containers
without device nodes).
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
from pathlib import Path

from speechctl.schemas import PlatformFacts

logger = logging.getLogger(__name__)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "armv6l": "armhf",
    "i386": "386",
    "i686": "386",
}

_OS_ALIASES = {
    "linux": "linux",
    "darwin": "darwin",
    "macos": "darwin",
    "windows": "windows",
    "win32": "windows",
}


def normalize_arch(machine: str) -> str:
    m = machine.lower()
    return _ARCH_ALIASES.get(m, m)


def normalize_os(system: str) -> str:
    s = system.lower()
    return _OS_ALIASES.get(s, s)


def _probe_nvidia() -> bool:
    if shutil.which("nvidia-smi"):
        return True
    return Path("/proc/driver/nvidia/version").exists()


def probe_gpu(os_name: str, arch: str) -> bool:
    """Return True if the host can run gpu artifacts.

    NVIDIA drivers on linux/windows, Apple Silicon (Metal) on darwin/arm64.
    """
    forced = os.environ.get("SPEECH_FORCE_DEVICE", "").strip().lower()
    if forced in ("cpu", "gpu"):
        logger.debug("Device capability forced by SPEECH_FORCE_DEVICE=%s", forced)
        return forced == "gpu"

    if os_name == "darwin":
        return arch == "arm64"

    try:
        return _probe_nvidia()
    except OSError as e:
        logger.debug("GPU probe failed: %s", e)
        return False


def detect_platform_facts() -> PlatformFacts:
    """Probe the current host."""
    os_name = normalize_os(platform.system())
    arch = normalize_arch(platform.machine())
    facts = PlatformFacts(os=os_name, arch=arch, gpu=probe_gpu(os_name, arch))
    logger.debug("Platform facts: os=%s arch=%s gpu=%s", facts.os, facts.arch, facts.gpu)
    return facts
