"""GPU detection for cache and build diagnostics."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from .shell import capture, first_line, which

DRI_DEVICE = Path("/dev/dri")


class GpuKind(StrEnum):
    NVIDIA = "nvidia"
    OTHER = "other"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class GpuInfo:
    kind: GpuKind
    summary: str

    @property
    def available(self) -> bool:
        return self.kind is not GpuKind.NONE


def detect_gpu(dri_device: Path = DRI_DEVICE) -> GpuInfo:
    nvidia_smi = which("nvidia-smi")
    if nvidia_smi:
        query = capture(
            [nvidia_smi, "--query-gpu=name,memory.total", "--format=csv,noheader"]
        )
        return GpuInfo(GpuKind.NVIDIA, first_line(query, "detected but query failed"))
    if dri_device.is_dir():
        return GpuInfo(GpuKind.OTHER, "GPU device detected (Intel/AMD)")
    return GpuInfo(GpuKind.NONE, "No GPU detected - using CPU only")
