#!/usr/bin/env python3
"""
EXIF AI: CLI app to title, describe and tag photos using AI, writing the result into the photo.

Metadata is embedded natively in JPEG, PNG, WebP and TIFF files. RAW and HEIF/AVIF files get an
XMP sidecar next to them instead. Backends (OpenAI, Gemini, Cloudflare Workers AI, Ollama,
LM Studio) are tried in the configured order until one answers.

Requirements:
 - Credentials for at least one hosted backend, or a local Ollama / LM Studio server running a
   vision-language model.

"""
# ruff: noqa: PLR0913, T201

import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from exif_ai.backends import build_backends
from exif_ai.backup import backup_original
from exif_ai.config import DEFAULT_CONFIG_PATH, Config, load_config, save_config
from exif_ai.detect import detect_kind
from exif_ai.errors import ConfigError, ExifAiError
from exif_ai.failover import FailoverOrchestrator
from exif_ai.models import ContainerFamily, ProcessResult
from exif_ai.pipeline import Pipeline, collect_images
from exif_ai.reader import read_container
from exif_ai.writer import clear_metadata
from exif_ai.xmp import sidecar_path_for


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="exif-ai",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-exif_ai.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{thread.name:<12} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _load(config_path: Path | None) -> Config:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        logger.error("config_invalid", error=str(exc))
        raise SystemExit(1) from exc


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _result_line(result: ProcessResult) -> str:
    if not result.ok:
        return f"FAIL  {result.path}  [{result.error_type}] {result.error}"
    fields = ", ".join(result.outcome.written_fields) if result.outcome else ""
    mode = " (dry run)" if result.outcome and result.outcome.dry_run else ""
    return f"OK    {result.path}  via {result.backend}: {fields or 'nothing to write'}{mode}"


PathsArg = Annotated[
    list[Path],
    Parameter(
        validator=validators.Path(exists=True),
        help="One or more paths: files and/or directories",
    ),
]
ConfigOpt = Annotated[
    Path | None,
    Parameter(name=("--config", "-c"), help="JSON configuration file"),
]
JsonOpt = Annotated[
    bool,
    Parameter(name=("--json",), negative="", help="Print results as JSON on stdout"),
]
ConsoleLevelOpt = Annotated[
    LogLevel,
    Parameter(name=("--console-log-level",), help="Console log level"),
]
FileLevelOpt = Annotated[
    LogLevel,
    Parameter(name=("--file-log-level",), help="File log level"),
]
LogFolderOpt = Annotated[
    Path,
    Parameter(name=("--log-folder",), help="Directory where log files are stored"),
]


@app.command
@app.default
def tag(
    paths: PathsArg,
    *,
    config_path: ConfigOpt = None,
    dry_run: Annotated[
        bool | None,
        Parameter(
            name=("--dry-run", "-n"),
            negative="",
            help="Generate and serialise everything, but do not modify any file",
        ),
    ] = None,
    output_json: JsonOpt = False,
    workers: Annotated[
        int | None,
        Parameter(
            name=("--workers", "-w"),
            validator=validators.Number(gte=1),
            help="Images processed concurrently (default from config)",
        ),
    ] = None,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            negative="--no-recursive",
            help="Process files in subdirectories recursively",
        ),
    ] = True,
    backup: Annotated[
        bool | None,
        Parameter(
            name=("--backup",),
            negative="--no-backup",
            help="Keep a <name>.<ext>.bak copy before the first in-place write",
        ),
    ] = None,
    console_log_level: ConsoleLevelOpt = "INFO",
    file_log_level: FileLevelOpt = "DEBUG",
    log_folder: LogFolderOpt = Path("logs"),
) -> None:
    """
    Generate a title, description, tags and GPS for each image and write them into it.

    Fields already present are kept unless the configuration enables overwriting. GPS is never
    replaced. RAW and HEIF/AVIF images get an XMP sidecar.

    Exit status: returns 1 if configuration is unusable, no images are found or any image fails.

    Examples:
        exif-ai tag ./photos
        exif-ai ./photos/IMG_0001.jpg --dry-run --json
        exif-ai tag ./photos --no-recursive -w 8 -c exif-ai.json

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    config = _load(config_path)
    output = config.output
    if dry_run is not None:
        output = output.model_copy(update={"dry_run": dry_run})
    if backup is not None:
        output = output.model_copy(update={"backup_originals": backup})
    updates: dict[str, object] = {"output": output}
    if workers is not None:
        updates["workers"] = workers
    config = config.model_copy(update=updates)

    logger.info(
        "starting_exif_ai",
        inputs=[str(p) for p in paths],
        backends=config.enabled_backends(),
        dry_run=config.output.dry_run,
        backup=config.output.backup_originals,
        workers=config.workers,
        recursive=recursive,
    )

    try:
        backends = build_backends(config)
    except ConfigError as exc:
        logger.error("no_usable_backend", error=str(exc))
        raise SystemExit(1) from exc

    image_files = collect_images(paths, recursive=recursive)
    if not image_files:
        logger.error("no_image_files_found", inputs=[str(p) for p in paths], recursive=recursive)
        raise SystemExit(1)

    pipeline = Pipeline(config, FailoverOrchestrator(backends, timeout=config.timeout))
    try:
        results = pipeline.process_batch(image_files)
    except KeyboardInterrupt:
        logger.error("aborted_by_user")
        raise SystemExit(130) from None

    if output_json:
        _print_json([r.model_dump(mode="json") | {"ok": r.ok} for r in results])
    else:
        for result in results:
            print(_result_line(result))

    if not all(r.ok for r in results):
        raise SystemExit(1)


@app.command
def show(
    paths: PathsArg,
    *,
    output_json: JsonOpt = False,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            negative="--no-recursive",
            help="Read files in subdirectories recursively",
        ),
    ] = True,
    console_log_level: ConsoleLevelOpt = "WARNING",
) -> None:
    """
    Print the metadata already present in each image. Never modifies anything.

    Exit status: returns 1 if any image cannot be read.
    """
    setup_logging(file_log_level="OFF", console_log_level=console_log_level)
    report: list[dict[str, object]] = []
    failed = 0
    for path in collect_images(paths, recursive=recursive):
        with logger.contextualize(file=path.name):
            try:
                kind = detect_kind(path)
                snapshot = read_container(path, kind)
            except ExifAiError as exc:
                failed += 1
                logger.error("read_failed", error_type=type(exc).__name__, error=str(exc))
                report.append({"path": str(path), "error": str(exc)})
                continue
        metadata = snapshot.metadata.model_dump(mode="json", exclude={"locations"})
        entry: dict[str, object] = {"path": str(path), "kind": str(kind), **metadata}
        if snapshot.warnings:
            entry["warnings"] = snapshot.warnings
        report.append(entry)

    if output_json:
        _print_json(report)
    else:
        for entry in report:
            print(entry["path"])
            for key, value in entry.items():
                if key != "path" and value not in (None, [], False):
                    print(f"  {key:<14} {value}")

    if failed:
        raise SystemExit(1)


@app.command
def clear(
    paths: PathsArg,
    *,
    dry_run: Annotated[
        bool,
        Parameter(name=("--dry-run", "-n"), negative="", help="Report what would be removed"),
    ] = False,
    backup: Annotated[
        bool,
        Parameter(
            name=("--backup",),
            negative="--no-backup",
            help="Keep a <name>.<ext>.bak copy before removing anything",
        ),
    ] = True,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            negative="--no-recursive",
            help="Process files in subdirectories recursively",
        ),
    ] = True,
    console_log_level: ConsoleLevelOpt = "INFO",
    file_log_level: FileLevelOpt = "DEBUG",
    log_folder: LogFolderOpt = Path("logs"),
) -> None:
    """
    Remove EXIF, XMP and IPTC metadata from each image (RAW/HEIF: delete the XMP sidecar).

    Bare TIFF files are refused because their metadata shares IFD0 with the image structure.

    Exit status: returns 1 if any image fails.
    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    failed = 0
    for path in collect_images(paths, recursive=recursive):
        with logger.contextualize(file=path.name):
            try:
                removed = clear_metadata(path, dry_run=True)
                if removed and not dry_run:
                    if backup:
                        kind = detect_kind(path)
                        backup_original(
                            sidecar_path_for(path)
                            if kind.family is ContainerFamily.SIDECAR
                            else path
                        )
                    removed = clear_metadata(path)
            except ExifAiError as exc:
                failed += 1
                logger.error("clear_failed", error_type=type(exc).__name__, error=str(exc))
                print(f"FAIL  {path}  [{type(exc).__name__}] {exc}")
                continue
        suffix = " (dry run)" if dry_run else ""
        print(f"OK    {path}  removed: {', '.join(removed) or 'nothing'}{suffix}")

    if failed:
        raise SystemExit(1)


@app.command
def init(
    *,
    config_path: ConfigOpt = None,
    force: Annotated[
        bool,
        Parameter(name=("--force", "-f"), negative="", help="Overwrite an existing file"),
    ] = False,
) -> None:
    """Write a configuration file with the default settings."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    target = config_path or DEFAULT_CONFIG_PATH
    if target.exists() and not force:
        logger.error("config_exists", path=str(target), hint="use --force to overwrite")
        raise SystemExit(1)
    save_config(Config(), target)
    print(f"Wrote default configuration to {target}")


if __name__ == "__main__":
    app()
