"""Deterministic model resolution and optional Hugging Face download plumbing."""

from __future__ import annotations

import json
import os
import platform
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import import_module
from pathlib import Path
from typing import Callable

from .config import TranscriptionConfig

DEFAULT_MODEL_ID = "Qwen/Qwen3-ASR-1.7B"
_DEFAULT_MODEL_REVISION = "default"


class ModelResolutionError(ValueError):
    """Raised when model path resolution or download fails."""


@dataclass(frozen=True)
class DownloadMetadata:
    """Metadata recorded next to downloaded snapshots."""

    backend: str
    model_id: str
    revision: str
    downloaded_at: str


def resolve_model_cache_dir() -> Path:
    """Return the deterministic model cache directory and ensure it exists."""

    if os.name == "nt":
        base = Path(os.environ.get("USERPROFILE", Path.home()))
    else:
        base = Path.home()

    cache_dir = base / ".speechcore" / "models"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def _sanitize_repo_id(repo_id: str) -> str:
    return repo_id.replace("/", "--")


def _is_model_present(path: Path) -> bool:
    return path.is_dir() and any(path.iterdir())


def validate_model_snapshot(model_dir: Path) -> None:
    """Require ``config.json`` and at least one ``*.safetensors`` file."""

    missing: list[str] = []
    if not (model_dir / "config.json").is_file():
        missing.append("config.json")
    if not any(model_dir.glob("*.safetensors")):
        missing.append("*.safetensors")
    if not missing:
        return

    found_files = ", ".join(sorted(path.name for path in model_dir.iterdir())) if model_dir.is_dir() else "<none>"
    raise ModelResolutionError(
        f"Resolved model directory '{model_dir}' is missing required files: {', '.join(missing)}. "
        "Expected a Qwen3-ASR snapshot with safetensors weights. "
        f"Found files: {found_files}"
    )


def _is_windows_platform() -> bool:
    return platform.system().lower().startswith("win")


def _resolve_progress_enabled(download_progress: bool | None) -> bool:
    if download_progress is not None:
        return download_progress
    return not _is_windows_platform()


def _apply_progress_env(*, progress_enabled: bool) -> None:
    if progress_enabled:
        os.environ.pop("HF_HUB_DISABLE_PROGRESS_BARS", None)
    else:
        os.environ["HF_HUB_DISABLE_PROGRESS_BARS"] = "1"


def _write_metadata_file(*, model_dir: Path, metadata: DownloadMetadata) -> None:
    metadata_path = model_dir / "model_metadata.json"
    metadata_path.write_text(
        json.dumps(
            {
                "backend": metadata.backend,
                "model_id": metadata.model_id,
                "revision": metadata.revision,
                "downloaded_at": metadata.downloaded_at,
            },
            ensure_ascii=False,
            indent=2,
            sort_keys=True,
        )
        + "\n",
        encoding="utf-8",
    )


def download_model_snapshot(
    *,
    backend_name: str,
    model_id: str,
    revision: str | None,
    cache_dir: Path,
    cancel_check: Callable[[], bool] | None = None,
    download_progress: bool | None = None,
) -> Path:
    """Download a Hugging Face snapshot of ``model_id`` into the cache directory."""

    if cancel_check is not None and cancel_check():
        raise ModelResolutionError("Model download cancelled before start.")

    try:
        huggingface_hub_module = import_module("huggingface_hub")
    except ModuleNotFoundError as exc:
        raise ModelResolutionError(
            "Model-id download requires huggingface_hub. "
            "Install dependencies or provide --model-path."
        ) from exc

    snapshot_download = getattr(huggingface_hub_module, "snapshot_download", None)
    if snapshot_download is None:
        raise ModelResolutionError(
            "huggingface_hub is installed but snapshot_download is unavailable. "
            "Upgrade huggingface_hub or provide --model-path."
        )

    resolved_revision = revision if revision else _DEFAULT_MODEL_REVISION
    model_dir = cache_dir / backend_name / _sanitize_repo_id(model_id) / resolved_revision
    model_dir.mkdir(parents=True, exist_ok=True)

    _apply_progress_env(progress_enabled=_resolve_progress_enabled(download_progress))

    try:
        snapshot_download(repo_id=model_id, revision=revision, local_dir=str(model_dir))
    except Exception as exc:  # pragma: no cover - network specific
        raise ModelResolutionError(
            "Failed to download model-id snapshot from Hugging Face. "
            f"Repository: '{model_id}' revision='{resolved_revision}'. "
            "Check connectivity/permissions or provide --model-path."
        ) from exc

    if cancel_check is not None and cancel_check():
        raise ModelResolutionError("Model download cancelled by caller.")

    validate_model_snapshot(model_dir)
    _write_metadata_file(
        model_dir=model_dir,
        metadata=DownloadMetadata(
            backend=backend_name,
            model_id=model_id,
            revision=resolved_revision,
            downloaded_at=datetime.now(timezone.utc).isoformat(),
        ),
    )
    return model_dir


def resolve_model_path(config: TranscriptionConfig, *, cache_dir: Path | None = None) -> Path:
    """Resolve the model directory: explicit path, then cached snapshot, then download."""

    if config.model_path is not None:
        explicit_path = config.model_path
        if _is_model_present(explicit_path):
            validate_model_snapshot(explicit_path)
            return explicit_path
        raise ModelResolutionError(f"Model not found at explicit --model-path '{explicit_path}'.")

    cache_dir = cache_dir if cache_dir is not None else resolve_model_cache_dir()
    model_id = config.model_id if config.model_id is not None else DEFAULT_MODEL_ID
    resolved_revision = config.revision if config.revision else _DEFAULT_MODEL_REVISION
    cached_dir = cache_dir / config.backend_name / _sanitize_repo_id(model_id) / resolved_revision

    if _is_model_present(cached_dir):
        validate_model_snapshot(cached_dir)
        if config.log_callback is not None:
            config.log_callback("model resolution: cached hit")
            config.log_callback(f"model resolution: resolved cache directory: {cached_dir}")
        return cached_dir

    if config.log_callback is not None:
        config.log_callback("model resolution: downloading")
        config.log_callback(f"model resolution: resolved cache directory: {cached_dir}")

    return download_model_snapshot(
        backend_name=config.backend_name,
        model_id=model_id,
        revision=config.revision,
        cache_dir=cache_dir,
        cancel_check=config.cancel_check,
        download_progress=config.download_progress,
    )
