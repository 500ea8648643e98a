"""Sequential failover across the configured backend chain."""

import concurrent.futures
import contextvars
import time
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from exif_ai.backends import Backend
from exif_ai.errors import AllBackendsExhausted, BackendUnusable
from exif_ai.models import GeneratedMetadata


@dataclass(frozen=True)
class Generation:
    metadata: GeneratedMetadata
    backend: str


class FailoverOrchestrator:
    """
    Try each backend in order until one returns non-empty metadata.

    A backend is unusable for an image when it raises, exceeds `timeout` or answers with neither a
    title nor tags. There are no retries; the next backend is tried instead.
    """

    def __init__(self, backends: Sequence[Backend], timeout: float | None = None) -> None:
        self.backends = list(backends)
        self.timeout = timeout

    def _call(self, backend: Backend, image_bytes: bytes, mime_type: str) -> GeneratedMetadata:
        # A hung call cannot be killed; its thread is abandoned and left to finish on its own.
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"backend-{backend.name}"
        )
        # Carry the per-image logging context into the worker thread
        context = contextvars.copy_context()
        future = executor.submit(context.run, backend.analyze, image_bytes, mime_type)
        try:
            metadata = future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError as exc:
            raise BackendUnusable(backend.name, f"timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise BackendUnusable(backend.name, f"{type(exc).__name__}: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if metadata.is_empty:
            raise BackendUnusable(backend.name, "empty result (no title and no tags)")
        return metadata

    def generate(self, image_bytes: bytes, mime_type: str) -> Generation:
        """
        Return the first usable backend's metadata.

        Raises:
            AllBackendsExhausted: Every backend was unavailable or unusable

        """
        last_error: BaseException | None = None
        attempted = 0
        for backend in self.backends:
            attempted += 1
            if not backend.available():
                logger.warning("backend_unavailable", backend=backend.name)
                last_error = BackendUnusable(backend.name, "unavailable")
                continue
            t0 = time.perf_counter()
            try:
                metadata = self._call(backend, image_bytes, mime_type)
            except BackendUnusable as exc:
                logger.warning("backend_unusable", backend=backend.name, reason=exc.reason)
                last_error = exc
                continue
            logger.info(
                "backend_succeeded",
                backend=backend.name,
                title=metadata.title,
                tags=len(metadata.tags),
                seconds=round(time.perf_counter() - t0, 3),
            )
            return Generation(metadata=metadata, backend=backend.name)

        raise AllBackendsExhausted(last_error, attempted)
