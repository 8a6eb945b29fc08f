# backend/chatline/services/base.py
"""
Base Service Pattern for Chatline

Provides common functionality for all service classes:
- Access to the directory store
- Logging
- Performance monitoring (in-process stats and Prometheus)
"""

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional, TypeVar, cast

from ..core.config import settings
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..storage.base import DirectoryStore

logger = logging.getLogger(__name__)


class BaseService:
    """
    Base class for all service layer components.

    Services are stateless apart from their collaborators and may be shared
    by every connection on the event loop.
    """

    def __init__(self, store: DirectoryStore):
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)
        self._metrics: Dict[str, Dict[str, Any]] = {}

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        stats = self._metrics.setdefault(
            operation,
            {"count": 0, "total_time": 0.0, "success_count": 0, "failure_count": 0},
        )
        stats["count"] += 1
        stats["total_time"] += elapsed
        if success:
            stats["success_count"] += 1
        else:
            stats["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation counters with average latency and success rate."""
        result = {}
        for operation, stats in self._metrics.items():
            count = stats["count"]
            result[operation] = {
                **stats,
                "avg_time": stats["total_time"] / count if count else 0.0,
                "success_rate": stats["success_count"] / count if count else 0.0,
            }
        return result

    def _finish_measurement(
        self, operation_name: str, elapsed: float, success: bool, error_type: Optional[str]
    ) -> None:
        self._record_metric(operation_name, elapsed, success)

        if elapsed > settings.slow_operation_threshold_seconds:
            self.logger.warning(f"Slow operation detected: {operation_name} took {elapsed:.2f}s")

        prometheus_metrics.record_service_operation(
            service=self.__class__.__name__,
            operation=operation_name,
            duration=elapsed,
            status="success" if success else "error",
            error_type=error_type,
        )

    @staticmethod
    def measure_operation(operation_name: str) -> Callable:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("send_message")
            async def send_message(self, ...):
                ...

        Works for both plain and coroutine methods.
        """

        F = TypeVar("F", bound=Callable[..., Any])

        def decorator(func: F) -> F:
            func._operation_name = operation_name  # type: ignore[attr-defined]

            if not asyncio.iscoroutinefunction(func):

                @wraps(func)
                def wrapper(self, *args, **kwargs):
                    start_time = time.time()
                    success = False
                    error_type = None
                    try:
                        result = func(self, *args, **kwargs)
                        success = True
                        return result
                    except Exception as e:
                        error_type = type(e).__name__
                        raise
                    finally:
                        self._finish_measurement(
                            operation_name, time.time() - start_time, success, error_type
                        )

                return cast(F, wrapper)

            @wraps(func)
            async def async_wrapper(self, *args, **kwargs):
                start_time = time.time()
                success = False
                error_type = None
                try:
                    result = await func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    self._finish_measurement(
                        operation_name, time.time() - start_time, success, error_type
                    )

            return cast(F, async_wrapper)

        return decorator

    @asynccontextmanager
    async def async_measure_operation_context(self, operation_name: str) -> AsyncIterator[None]:
        """
        Async context manager to measure a block that is not a whole method.

        Usage:
            async with self.async_measure_operation_context("fan_out"):
                ...
        """
        start_time = time.time()
        success = False
        error_type = None
        try:
            yield
            success = True
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            self._finish_measurement(operation_name, time.time() - start_time, success, error_type)
