"""CLI entrypoint for speechcore transcription."""

from __future__ import annotations

import argparse
import json
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from speechcore.asr import (
    MockTranscriptionBackend,
    TranscriptionConfig,
    TranscriptionResult,
    get_backend,
    list_backend_status,
    resolve_device_with_details,
)
from speechcore.asr.model_resolution import ModelResolutionError, resolve_model_path
from speechcore.audio.preprocess import NATIVE_AUDIO_SUFFIXES, convert_to_canonical_wav, load_audio

VERSION = "0.1.0"

_SOURCE_SPEAKERS = {"mic": "You", "system": "Others"}
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PARTIAL = 3


@dataclass
class CliError(Exception):
    """Represents a fatal, user-facing CLI validation/runtime error."""

    message: str


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="speechcore")
    parser.add_argument("--input", dest="input_path")
    parser.add_argument("--out", dest="out_path")
    parser.add_argument("--asr-backend", default="qwen3-asr")
    parser.add_argument("--mock-asr", dest="mock_asr_path")
    parser.add_argument("--model-path")
    parser.add_argument("--model-id")
    parser.add_argument("--revision")
    parser.add_argument("--aligner-path")
    parser.add_argument("--device", default="auto")
    parser.add_argument("--language")
    parser.add_argument("--max-chunk-seconds", type=float, default=20.0)
    parser.add_argument("--chunk-overlap-seconds", type=float, default=0.0)
    parser.add_argument("--encode-workers", type=int, default=1)
    parser.add_argument("--max-new-tokens", type=int, default=448)
    parser.add_argument("--source", choices=tuple(_SOURCE_SPEAKERS), default=None)
    parser.add_argument("--ffmpeg-path")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--asr-preflight-only", action="store_true")
    return parser


def _validate_required_args(args: argparse.Namespace) -> None:
    if args.asr_preflight_only:
        return
    if not args.input_path:
        raise CliError("Missing required arguments: --input")


def _validate_backend(args: argparse.Namespace) -> None:
    backend_status_by_name = {status.name: status for status in list_backend_status()}
    status = backend_status_by_name.get(args.asr_backend)
    if status is not None and not status.enabled:
        missing = ", ".join(status.missing_dependencies)
        message = f"ASR backend '{status.name}' is declared but currently disabled. Missing optional dependencies: {missing}."
        if status.install_extra is not None:
            message = f"{message} Install with: `pip install 'speechcore[{status.install_extra}]'`."
        raise CliError(message)

    try:
        registration = get_backend(args.asr_backend)
    except ValueError as exc:
        raise CliError(str(exc)) from exc

    if registration.name == "mock" and not args.mock_asr_path:
        raise CliError("--mock-asr is required when --asr-backend mock is used.")


def _validate_asr_options(args: argparse.Namespace) -> None:
    if args.device not in {"cpu", "cuda", "mps", "auto"}:
        raise CliError("Invalid --device value. Expected one of: cpu, cuda, mps, auto.")
    if args.model_id is not None and not str(args.model_id).strip():
        raise CliError("Invalid --model-id value. Expected a non-empty Hugging Face repo id.")
    if args.revision is not None and args.model_id is None:
        raise CliError("--revision requires --model-id.")
    if args.model_path is not None and args.model_id is not None:
        raise CliError("Use only one of: --model-path or --model-id.")
    if args.max_chunk_seconds <= 0:
        raise CliError("Invalid --max-chunk-seconds value. Expected a float greater than 0.")
    if args.chunk_overlap_seconds < 0 or args.chunk_overlap_seconds >= args.max_chunk_seconds:
        raise CliError("Invalid --chunk-overlap-seconds value. Expected 0 <= overlap < --max-chunk-seconds.")
    if args.encode_workers < 1:
        raise CliError("Invalid --encode-workers value. Expected an integer greater than or equal to 1.")
    if args.max_new_tokens < 1:
        raise CliError("Invalid --max-new-tokens value. Expected an integer greater than or equal to 1.")


def resolve_ffmpeg_binary(
    ffmpeg_path: str | None,
    which: Callable[[str], str | None] = shutil.which,
) -> str:
    if ffmpeg_path:
        return ffmpeg_path

    resolved = which("ffmpeg")
    if not resolved:
        raise CliError(
            "ffmpeg not found. Install ffmpeg or provide an explicit path with --ffmpeg-path."
        )
    return resolved


def _build_config(args: argparse.Namespace, log_callback: Callable[[str], None]) -> TranscriptionConfig:
    speaker_label = _SOURCE_SPEAKERS.get(args.source, "Speaker") if args.source else "Speaker"
    return TranscriptionConfig(
        backend_name=args.asr_backend,
        model_path=Path(args.model_path) if args.model_path else None,
        model_id=args.model_id,
        revision=args.revision,
        device=args.device,
        language=args.language,
        max_chunk_duration_seconds=args.max_chunk_seconds,
        chunk_overlap_seconds=args.chunk_overlap_seconds,
        encode_workers=args.encode_workers,
        max_new_tokens=args.max_new_tokens,
        speaker_label=speaker_label,
        log_callback=log_callback,
    )


def _run_asr_preflight_only(*, config: TranscriptionConfig) -> int:
    resolved_model_path: Path | None = None
    resolution_reason = "mock backend does not require device probing"
    if config.backend_name != "mock":
        try:
            resolved_model_path = resolve_model_path(config)
        except ModelResolutionError as exc:
            raise CliError(str(exc)) from exc
        resolution_reason = resolve_device_with_details(config.device).reason

    payload = {
        "mode": "asr_preflight_only",
        "backend": config.backend_name,
        "model_resolution": {
            "requested": {
                "model_path": str(config.model_path) if config.model_path is not None else None,
                "model_id": config.model_id,
                "revision": config.revision,
            },
            "resolved_model_path": str(resolved_model_path) if resolved_model_path is not None else None,
        },
        "device": {
            "requested": config.device,
            "resolution_reason": resolution_reason,
        },
    }
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    return EXIT_OK


def _load_input_audio(
    input_path: Path,
    *,
    ffmpeg_path: str | None,
    which: Callable[[str], str | None],
    runner: Callable[..., subprocess.CompletedProcess[str]],
) -> tuple[object, int]:
    if not input_path.exists():
        raise CliError(f"Input file does not exist: {input_path}")
    if input_path.suffix.lower() in NATIVE_AUDIO_SUFFIXES:
        return load_audio(input_path)

    ffmpeg_binary = resolve_ffmpeg_binary(ffmpeg_path, which=which)
    with tempfile.TemporaryDirectory(prefix="speechcore_audio_") as temp_dir:
        canonical_wav = convert_to_canonical_wav(
            ffmpeg_binary=ffmpeg_binary,
            input_path=input_path,
            output_dir=Path(temp_dir),
            runner=runner,
        )
        return load_audio(canonical_wav)


def _write_result(result: TranscriptionResult, out_path: str | None) -> None:
    rendered = json.dumps(result, ensure_ascii=False, indent=2) + "\n"
    if out_path is None:
        sys.stdout.write(rendered)
        return
    output = Path(out_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(rendered, encoding="utf-8")


def main(
    argv: Sequence[str] | None = None,
    *,
    which: Callable[[str], str | None] = shutil.which,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
) -> int:
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse uses exit code 2 for parse failures; normalize to 1 for fatal CLI errors.
        return EXIT_OK if exc.code == 0 else EXIT_ERROR

    if args.version:
        print(f"speechcore {VERSION}")
        return EXIT_OK

    logs: list[str] = []
    runtime_started = time.perf_counter()

    try:
        _validate_required_args(args)
        _validate_backend(args)
        _validate_asr_options(args)
        config = _build_config(args, logs.append)
        if args.asr_preflight_only:
            return _run_asr_preflight_only(config=config)

        if args.verbose:
            print("stage: load audio start", file=sys.stderr)
        samples, sample_rate = _load_input_audio(
            Path(args.input_path),
            ffmpeg_path=args.ffmpeg_path,
            which=which,
            runner=runner,
        )

        registration = get_backend(config.backend_name)
        if registration.name == "mock":
            backend = MockTranscriptionBackend(Path(args.mock_asr_path))
        else:
            backend = registration.backend_class(
                aligner_path=Path(args.aligner_path) if args.aligner_path else None,
            )

        if args.verbose:
            print("stage: transcription start", file=sys.stderr)
        result = backend.transcribe(samples, sample_rate, config)
        if args.verbose:
            print("stage: transcription end", file=sys.stderr)
        _write_result(result, args.out_path)
    except (CliError, ValueError) as exc:
        message = exc.message if isinstance(exc, CliError) else str(exc)
        print(f"Error: {message}", file=sys.stderr)
        return EXIT_ERROR

    meta = result["meta"]
    if args.verbose:
        for log_line in logs:
            print(f"Verbose: {log_line}", file=sys.stderr)
        print(
            "Verbose: asr backend="
            f"{meta['backend']} model={meta['model']} version={meta['version']} device={meta['device']} "
            f"status={meta['status']} chunks={meta['chunks_completed']}/{meta['chunks_total']} "
            f"segments={len(result['segments'])}",
            file=sys.stderr,
        )
        print(f"Verbose: total runtime seconds={time.perf_counter() - runtime_started:.4f}", file=sys.stderr)

    if meta["status"] != "completed":
        print(
            f"Warning: transcription ended with status '{meta['status']}' "
            f"after {meta['chunks_completed']}/{meta['chunks_total']} chunk(s); partial results written.",
            file=sys.stderr,
        )
        return EXIT_PARTIAL
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
