"""Logging setup and operation metrics for notegraph.

Log records from every ``notegraph.*`` module go to one rotating file.
Service operations decorated with :func:`traced` (or wrapped in
:func:`timed_operation`) are timed and counted in the module-level
``metrics`` collector.
"""
import functools
import inspect
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "notegraph"
LOG_FILENAME = "notegraph.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Call arguments copied into the debug log of a traced operation
_TRACED_ARGUMENTS = ("note_id", "identifier", "target", "version")

F = TypeVar("F", bound=Callable[..., Any])

_logging_configured = False


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        from notegraph.config import config
        level = config.log_level
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: Union[int, str, None] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``notegraph`` logger hierarchy to a rotating log file.

    ``log_dir`` and ``level`` default to ``config.log_dir`` (or
    ``~/.notegraph/logs``) and ``config.log_level``. Calling this again with
    the same directory does not add a second file handler.

    Returns:
        The directory holding ``notegraph.log``.
    """
    global _logging_configured
    from notegraph.config import config

    log_path = Path(log_dir or config.log_dir or Path.home() / ".notegraph" / "logs")
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = (log_path / LOG_FILENAME).resolve()
    level = _resolve_level(level)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = package_logger.handlers
    if not any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file
        for h in handlers
    ):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    has_console = any(type(h) is logging.StreamHandler for h in handlers)
    if console and not has_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        package_logger.addHandler(stream_handler)

    for handler in package_logger.handlers:
        handler.setLevel(level)

    _logging_configured = True
    package_logger.info(f"Writing logs to {log_file}")
    return log_path


def is_logging_configured() -> bool:
    return _logging_configured


@dataclass
class OperationMetrics:
    """Accumulated outcomes of one named operation."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def add(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
            return
        self.error_count += 1
        self.last_error = error
        self.last_error_time = datetime.now(timezone.utc)

    def as_dict(self) -> Dict[str, Any]:
        average = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0.0,
            "avg_duration_ms": round(average, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }


class MetricsCollector:
    """Per-operation timings and outcome counts, safe to share across threads.

    Metrics are held in memory; :meth:`save_metrics` writes them as JSON
    when the collector was given a ``metrics_file``.
    """

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._operations: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else None

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._operations[operation].add(duration_ms, success, error)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: op.as_dict() for name, op in self._operations.items()}

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            total = sum(op.count for op in self._operations.values())
            succeeded = sum(op.success_count for op in self._operations.values())
            uptime = datetime.now(timezone.utc) - self._started
            return {
                "uptime_seconds": uptime.total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": total - succeeded,
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._operations),
            }

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._started = datetime.now(timezone.utc)

    def save_metrics(self) -> bool:
        """Persist a snapshot to the metrics file. False if none is set or writing fails."""
        if self._metrics_file is None:
            return False
        snapshot = {
            "start_time": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.get_metrics(),
        }
        # Write then rename so readers never see a half-written file
        partial = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            partial.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            partial.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Could not write metrics to {self._metrics_file}: {e}")
            return False
        return True

    def get_metrics_file(self) -> Optional[Path]:
        return self._metrics_file


def _configured_metrics_file() -> Optional[Path]:
    from notegraph.config import config
    return config.metrics_file


metrics = MetricsCollector(_configured_metrics_file())


@contextmanager
def timed_operation(operation: str, **context: Any) -> Iterator[Dict[str, Any]]:
    """Time the block and record it under ``operation`` in ``metrics``.

    The yielded dict is logged with the outcome, so callers can attach
    counts to it::

        with timed_operation("migrate_link_extraction", notes=len(pairs)) as op:
            ...
            op["batches"] = summary.batches
    """
    run_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    described = " ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"{operation}[{run_id}] started {described}".rstrip())

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)
        outcome = "ok" if error is None else f"failed: {error}"
        extra = " ".join(f"{k}={v}" for k, v in details.items())
        logger.debug(
            f"{operation}[{run_id}] {outcome} in {elapsed_ms:.2f}ms {extra}".rstrip()
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Record every call of the decorated function with :func:`timed_operation`.

    Note ids, identifiers, targets and versions passed to the call are
    included in the debug log. The size of list or dict results is noted.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                bound = signature.bind_partial(*args, **kwargs).arguments
            except TypeError:
                bound = kwargs
            context = {k: bound[k] for k in _TRACED_ARGUMENTS if k in bound}
            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, dict)):
                    op["results"] = len(result)
                return result

        return wrapper  # type: ignore[return-value]
    return decorator
