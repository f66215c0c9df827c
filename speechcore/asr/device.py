"""Deterministic compute device resolution helpers."""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from typing import Callable, Literal

from .config import DeviceType

ResolvedDevice = Literal["cpu", "cuda", "mps"]


@dataclass(frozen=True)
class DeviceResolution:
    """Resolved device plus a deterministic explanation."""

    requested: DeviceType
    resolved: ResolvedDevice
    reason: str


def _probe_torch_accelerators() -> tuple[bool, bool, str]:
    """Return ``(cuda_available, mps_available, reason)`` as reported by torch."""

    try:
        torch = import_module("torch")
    except ModuleNotFoundError:
        return False, False, "torch is not installed"

    cuda_available = bool(torch.cuda.is_available())
    mps_backend = getattr(torch.backends, "mps", None)
    mps_available = bool(mps_backend is not None and mps_backend.is_available())

    if cuda_available:
        return True, mps_available, f"torch detected {torch.cuda.device_count()} CUDA device(s)"
    if mps_available:
        return False, True, "torch detected an MPS device"
    return False, False, "torch detected no CUDA or MPS device"


def resolve_device(
    requested_device: DeviceType,
    *,
    accelerator_probe: Callable[[], tuple[bool, bool, str]] | None = None,
) -> ResolvedDevice:
    """Resolve the configured device deterministically."""

    return resolve_device_with_details(
        requested_device,
        accelerator_probe=accelerator_probe,
    ).resolved


def resolve_device_with_details(
    requested_device: DeviceType,
    *,
    accelerator_probe: Callable[[], tuple[bool, bool, str]] | None = None,
) -> DeviceResolution:
    """Resolve the configured device and return deterministic reasoning.

    ``auto`` prefers CUDA, then MPS, then CPU. An explicit accelerator that
    is unavailable is an error rather than a silent CPU fallback.
    """

    if requested_device == "cpu":
        return DeviceResolution(
            requested=requested_device,
            resolved="cpu",
            reason="explicit --device cpu request",
        )
    if requested_device not in {"cuda", "mps", "auto"}:
        raise ValueError(f"Unsupported device '{requested_device}'. Expected cpu, cuda, mps, or auto.")

    probe = accelerator_probe if accelerator_probe is not None else _probe_torch_accelerators
    cuda_available, mps_available, availability_reason = probe()

    if requested_device == "cuda":
        if not cuda_available:
            raise ValueError(
                "Requested --device cuda, but CUDA is unavailable. "
                f"Reason: {availability_reason}. "
                "Install a CUDA-enabled torch build, verify the NVIDIA driver, or rerun with --device cpu."
            )
        return DeviceResolution(
            requested=requested_device,
            resolved="cuda",
            reason=f"explicit --device cuda request; {availability_reason}",
        )

    if requested_device == "mps":
        if not mps_available:
            raise ValueError(
                "Requested --device mps, but MPS is unavailable. "
                f"Reason: {availability_reason}. Rerun with --device cpu."
            )
        return DeviceResolution(
            requested=requested_device,
            resolved="mps",
            reason=f"explicit --device mps request; {availability_reason}",
        )

    if cuda_available:
        resolved: ResolvedDevice = "cuda"
    elif mps_available:
        resolved = "mps"
    else:
        resolved = "cpu"
    return DeviceResolution(
        requested=requested_device,
        resolved=resolved,
        reason=f"--device auto selected {resolved} because {availability_reason}",
    )
