"""Engine logging: YAML ``dictConfig`` plus the posting-operation context.

:func:`log_step` wraps one engine operation (``submit_batch``, ``auto_post``,
``rollback_auto_posting``...) and publishes the academic session and the
auto-posting batch it works on. :class:`OperationContextFilter` copies them
onto every record emitted inside the step, so formats may use
``%(operation)s``, ``%(session_id)s`` and ``%(batch_id)s``. A fatal storage
failure gets a standalone report through
:meth:`EngineLogContext.write_failure_report`.
"""
from __future__ import annotations

import logging
import logging.config
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Iterator, Mapping

import yaml

from tp_posting.core.common.errors import PostingEngineError

DEFAULT_LOGGING_CONFIG = Path("config/logging.yaml")
APP_LOGGER_NAME = "tp_posting"

_SCOPE_FIELDS = ("operation", "session_id", "batch_id")
_current_step: ContextVar[Mapping[str, Any] | None] = ContextVar("tp_posting_step", default=None)


@dataclass(slots=True, frozen=True)
class EngineLogContext:
    """Run-level logging state returned by :func:`configure_logging`.

    Example::

        >>> ctx = EngineLogContext(run_id="abc", version="0.1", log_dir=Path("logs"),
        ...                        report_dir=Path("logs/reports"))
        >>> ctx.report_dir.name
        'reports'
    """

    run_id: str
    version: str
    log_dir: Path
    report_dir: Path

    def write_failure_report(
        self,
        exc: BaseException,
        *,
        operation: str,
        session_id: int | None = None,
        batch_id: int | None = None,
    ) -> Path:
        """Write one report file for an operation that failed fatally.

        Returns:
            Path of the written report.
        """

        timestamp = datetime.now(timezone.utc)
        report_id = f"{self.run_id[:12]}-{uuid.uuid4().hex[:8]}"
        self.report_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.report_dir / f"{operation}-{report_id}-{timestamp.strftime('%Y%m%dT%H%M%SZ')}.log"
        lines = [
            f"run_id={self.run_id}",
            f"version={self.version}",
            f"operation={operation}",
            f"session_id={'-' if session_id is None else session_id}",
            f"batch_id={'-' if batch_id is None else batch_id}",
            f"timestamp={timestamp.isoformat().replace('+00:00', 'Z')}",
            "",
            f"{type(exc).__name__}: {exc}",
            "",
            "".join(traceback.format_exception(exc)).strip(),
            "",
        ]
        report_path.write_text("\n".join(lines), encoding="utf-8")
        return report_path


class OperationContextFilter(logging.Filter):
    """Stamp the run id and the enclosing step's scope on every record.

    Fields passed explicitly through ``extra`` win over the step scope.
    Records logged outside any step get ``-``.
    """

    def __init__(self, run_id: str) -> None:
        super().__init__(name="")
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        scope = _current_step.get() or {}
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        for name in _SCOPE_FIELDS:
            if not hasattr(record, name):
                value = scope.get(name)
                setattr(record, name, "-" if value is None else value)
        return True


def _attach_filter(target: logging.Logger, filter_obj: logging.Filter) -> None:
    """Install ``filter_obj``, replacing the filter of a previous run."""

    for owner in (target, *target.handlers):
        for existing in [f for f in owner.filters if isinstance(f, OperationContextFilter)]:
            owner.removeFilter(existing)
        owner.addFilter(filter_obj)


def _resolve_file_handlers(config: dict[str, Any], log_directory: Path) -> None:
    """Point relative file handlers at ``log_directory`` and create parents."""

    handlers = config.get("handlers", {})
    if not isinstance(handlers, dict):
        return
    for handler_cfg in handlers.values():
        if not isinstance(handler_cfg, dict):
            continue
        filename = handler_cfg.get("filename")
        if not filename:
            continue
        file_path = Path(str(filename)).expanduser()
        if not file_path.is_absolute():
            file_path = (log_directory / file_path.name).resolve()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handler_cfg["filename"] = str(file_path)


def configure_logging(
    *,
    version: str,
    config_path: str | Path = DEFAULT_LOGGING_CONFIG,
    log_dir: str | Path | None = None,
    logger_name: str = APP_LOGGER_NAME,
) -> EngineLogContext:
    """Apply the YAML config and attach the operation filter.

    Relative ``filename`` entries of file handlers land in ``log_dir``
    (``./logs`` by default); failure reports go to ``<log_dir>/reports``.

    Raises:
        FileNotFoundError: the config file does not exist.
        ValueError: the YAML document is not a mapping.
    """

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"logging config not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data: Any = yaml.safe_load(handle)
    if not isinstance(data, dict):
        raise ValueError("logging config must be a mapping")

    log_directory = Path(log_dir).expanduser().resolve() if log_dir else Path("logs").resolve()
    log_directory.mkdir(parents=True, exist_ok=True)
    _resolve_file_handlers(data, log_directory)
    logging.config.dictConfig(data)

    context = EngineLogContext(
        run_id=uuid.uuid4().hex,
        version=version,
        log_dir=log_directory,
        report_dir=log_directory / "reports",
    )
    filter_obj = OperationContextFilter(context.run_id)
    _attach_filter(logging.getLogger(), filter_obj)
    _attach_filter(logging.getLogger(logger_name), filter_obj)
    logging.captureWarnings(True)
    return context


@contextmanager
def log_step(
    logger: logging.Logger,
    operation: str,
    *,
    session_id: int | None = None,
    batch_id: int | None = None,
) -> Iterator[None]:
    """Log start, end and duration of one engine operation.

    Domain rejections are logged at INFO without a traceback; anything else
    is logged with its traceback. Both are re-raised.
    """

    token = _current_step.set({"operation": operation, "session_id": session_id, "batch_id": batch_id})
    start = perf_counter()
    try:
        logger.info("step %s started", operation)
        try:
            yield
        except PostingEngineError as exc:
            logger.info("step %s rejected (%s): %s", operation, exc.code, exc.message)
            raise
        except Exception:
            logger.exception("step %s failed", operation)
            raise
        logger.info("step %s finished (%.3fs)", operation, perf_counter() - start)
    finally:
        _current_step.reset(token)


__all__ = [
    "APP_LOGGER_NAME",
    "DEFAULT_LOGGING_CONFIG",
    "EngineLogContext",
    "OperationContextFilter",
    "configure_logging",
    "log_step",
]
