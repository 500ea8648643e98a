"""
Per-image processing pipeline and batch driver.

Each image runs Detect -> Read -> Preview -> Generate -> GPS policy -> Plan -> Backup -> Write.
A failure in any stage ends that image's run with an error recorded in its ProcessResult; the rest
of the batch carries on.
"""

import concurrent.futures
import contextlib
import time
from collections.abc import Iterable
from itertools import chain
from pathlib import Path

from loguru import logger

from exif_ai import gps
from exif_ai.backup import backup_original
from exif_ai.config import Config
from exif_ai.detect import detect_kind, is_supported
from exif_ai.errors import ExifAiError
from exif_ai.failover import FailoverOrchestrator
from exif_ai.imaging import preview_or_original
from exif_ai.models import ProcessResult
from exif_ai.reader import read_container
from exif_ai.writer import plan_fields, write_planned


def collect_images(inputs: Iterable[Path], *, recursive: bool = True) -> list[Path]:
    """
    Resolve provided inputs into a list of image files.

    - Directories are expanded to supported image files (honoring `recursive`)
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicates removed
    """
    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            candidates = path_resolved.rglob("*") if recursive else path_resolved.glob("*")
            files_from_dirs.extend(
                sorted(f for f in candidates if f.is_file() and is_supported(f))
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    logger.info("image_files_discovered", count=len(combined), recursive=recursive)
    return combined


class Pipeline:
    """Runs images through the stages with an immutable configuration shared by all workers."""

    def __init__(self, config: Config, orchestrator: FailoverOrchestrator) -> None:
        self.config = config
        self.orchestrator = orchestrator

    @property
    def dry_run(self) -> bool:
        return self.config.output.dry_run

    def _run(self, path: Path, result: ProcessResult) -> None:
        result.kind = detect_kind(path)
        snapshot = read_container(path, result.kind)
        result.existing = snapshot.metadata

        preview = preview_or_original(
            path,
            result.kind,
            jpg_quality=self.config.jpeg_quality,
            max_size=self.config.jpeg_dimensions,
        )
        generation = self.orchestrator.generate(preview.data, preview.media_type)
        result.backend = generation.backend
        result.generated = generation.metadata

        candidate = gps.decide(snapshot.metadata.has_gps, generation.metadata.gps)
        plan = plan_fields(
            snapshot.metadata,
            generation.metadata,
            self.config.fields,
            gps_candidate=candidate,
        )
        logger.debug("fields_planned", fields=plan.names)

        def take_backup() -> None:
            result.backup_path = backup_original(path)

        wants_backup = self.config.output.backup_originals and not result.kind.is_sidecar
        result.outcome = write_planned(
            snapshot,
            plan,
            dry_run=self.dry_run,
            before_commit=take_backup if wants_backup else None,
        )

    def process(self, path: Path) -> ProcessResult:
        """Process one image. Never raises for per-image failures."""
        result = ProcessResult(path=path)
        t0 = time.perf_counter()
        with logger.contextualize(file=path.name):
            try:
                self._run(path, result)
            except ExifAiError as exc:
                result.error = str(exc)
                result.error_type = type(exc).__name__
                logger.error("processing_failed", error_type=result.error_type, error=result.error)
            except Exception as exc:  # noqa: BLE001
                result.error = str(exc) or repr(exc)
                result.error_type = type(exc).__name__
                logger.exception("processing_exception", error=result.error)
            else:
                logger.info(
                    "processing_success",
                    backend=result.backend,
                    fields=result.outcome.written_fields if result.outcome else [],
                    dry_run=self.dry_run,
                    seconds=round(time.perf_counter() - t0, 3),
                )
        return result

    def process_batch(self, paths: list[Path], workers: int | None = None) -> list[ProcessResult]:
        """
        Process images on a bounded worker pool; results come back in completion order.

        On KeyboardInterrupt queued images are cancelled, in-flight ones finish, and the
        interrupt is re-raised.
        """
        max_workers = max(1, workers or self.config.workers)
        results: list[ProcessResult] = []
        logger.info("batch_started", images=len(paths), workers=max_workers)
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="image"
        )
        futures = [executor.submit(self.process, path) for path in paths]
        try:
            for future in concurrent.futures.as_completed(futures):
                results.append(future.result())
        except KeyboardInterrupt:
            logger.warning("batch_interrupted", completed=len(results), total=len(paths))
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        failed = sum(1 for r in results if not r.ok)
        logger.info(
            "processing_summary",
            total_files=len(paths),
            successful=len(results) - failed,
            failed=failed,
        )
        return results
