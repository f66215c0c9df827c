"""Transcription backend registry and capability metadata."""

from __future__ import annotations

from dataclasses import dataclass
from importlib.util import find_spec
from typing import Any

from .backends import MockTranscriptionBackend
from .qwen3_backend import Qwen3TranscriptionBackend


@dataclass(frozen=True)
class BackendCapabilities:
    """Capability metadata exposed for each transcription backend."""

    supports_segment_timestamps: bool
    supports_alignment: bool
    supports_language_hint: bool


@dataclass(frozen=True)
class BackendRegistration:
    """Registered backend metadata and implementation class."""

    name: str
    backend_class: type[Any]
    capabilities: BackendCapabilities


@dataclass(frozen=True)
class DeclaredBackend:
    """Backend declaration including optional dependency metadata."""

    registration: BackendRegistration
    required_dependencies: tuple[str, ...]
    install_extra: str | None = None


@dataclass(frozen=True)
class BackendStatus:
    """Backend availability status used by CLI validation/help output."""

    name: str
    enabled: bool
    missing_dependencies: tuple[str, ...]
    reason: str
    install_extra: str | None = None


def _missing_dependencies(required_dependencies: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dep for dep in required_dependencies if find_spec(dep) is None)


def _build_declared_registry() -> dict[str, DeclaredBackend]:
    return {
        "mock": DeclaredBackend(
            registration=BackendRegistration(
                name="mock",
                backend_class=MockTranscriptionBackend,
                capabilities=BackendCapabilities(
                    supports_segment_timestamps=True,
                    supports_alignment=False,
                    supports_language_hint=False,
                ),
            ),
            required_dependencies=(),
        ),
        "qwen3-asr": DeclaredBackend(
            registration=BackendRegistration(
                name="qwen3-asr",
                backend_class=Qwen3TranscriptionBackend,
                capabilities=BackendCapabilities(
                    supports_segment_timestamps=True,
                    supports_alignment=True,
                    supports_language_hint=True,
                ),
            ),
            required_dependencies=("torch", "safetensors", "transformers"),
            install_extra="qwen3",
        ),
    }


_DECLARED_REGISTRY = _build_declared_registry()


def list_backend_status() -> list[BackendStatus]:
    """Return declared backend status in deterministic order."""

    statuses: list[BackendStatus] = []
    for name in sorted(_DECLARED_REGISTRY):
        declared_backend = _DECLARED_REGISTRY[name]
        missing_dependencies = _missing_dependencies(declared_backend.required_dependencies)
        enabled = not missing_dependencies
        reason = "enabled" if enabled else f"missing optional dependencies: {', '.join(missing_dependencies)}"
        statuses.append(
            BackendStatus(
                name=name,
                enabled=enabled,
                missing_dependencies=missing_dependencies,
                reason=reason,
                install_extra=declared_backend.install_extra,
            )
        )
    return statuses


def list_declared_backends() -> list[str]:
    """Return all declared backend names in deterministic order."""

    return sorted(_DECLARED_REGISTRY.keys())


def list_backends() -> list[str]:
    """Return enabled backend names in deterministic order."""

    return [status.name for status in list_backend_status() if status.enabled]


def get_backend(name: str) -> BackendRegistration:
    """Return an enabled backend registration by name or raise ValueError."""

    declared = _DECLARED_REGISTRY.get(name)
    if declared is None:
        available = ", ".join(list_backends())
        raise ValueError(f"Unknown ASR backend '{name}'. Available backends: {available}")

    missing = _missing_dependencies(declared.required_dependencies)
    if missing:
        hint = f" Install with: pip install 'speechcore[{declared.install_extra}]'." if declared.install_extra else ""
        raise ValueError(
            f"ASR backend '{name}' is declared but disabled: missing optional dependencies: "
            f"{', '.join(missing)}.{hint}"
        )
    return declared.registration
