"""Exception taxonomy shared by the codec, the backends and the pipeline."""


class ExifAiError(Exception):
    """Base exception for the application."""


class ConfigError(ExifAiError):
    """Configuration cannot drive a run (e.g. no usable backend). Fatal before any image."""


class UnsupportedFormat(ExifAiError):  # noqa: N818
    """The input cannot be classified into a known container kind."""


class ParseError(ExifAiError):
    """The container is structurally invalid (bad signature, truncated header)."""


class UnsupportedOperation(ExifAiError):  # noqa: N818
    """The requested operation cannot be performed safely on this container kind."""


class WriteError(ExifAiError):
    """Serialising or committing new bytes failed."""


class BackupError(ExifAiError):
    """The original file could not be snapshotted before mutation."""


class BackendUnusable(ExifAiError):  # noqa: N818
    """One backend failed or produced an empty result. Drives failover, never fatal."""

    def __init__(self, backend: str, reason: str) -> None:
        super().__init__(f"{backend}: {reason}")
        self.backend = backend
        self.reason = reason


class AllBackendsExhausted(ExifAiError):  # noqa: N818
    """Every backend in the failover chain was unusable for this image."""

    def __init__(self, last_error: BaseException | None, attempted: int) -> None:
        detail = str(last_error) if last_error is not None else "no backends configured"
        super().__init__(f"all {attempted} backend(s) unusable; last error: {detail}")
        self.last_error = last_error
        self.attempted = attempted
