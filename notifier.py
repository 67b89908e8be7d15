import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from backup import RunResult

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send_success(self, result: "RunResult") -> None:
        pass

    @abstractmethod
    def send_error(self, job_name: str, error_message: str) -> None:
        pass


class LivenessNotifier(Notifier):
    """Keeps the outcome of the most recent backup job for the health endpoint."""

    def __init__(self, healthy: bool = False):
        self._lock = threading.Lock()
        self._healthy = healthy

    @property
    def healthy(self) -> bool:
        with self._lock:
            return self._healthy

    def send_success(self, result: "RunResult") -> None:
        with self._lock:
            self._healthy = True

    def send_error(self, job_name: str, error_message: str) -> None:
        with self._lock:
            self._healthy = False


class LogNotifier(Notifier):
    def send_success(self, result: "RunResult") -> None:
        logger.info("Backup %s uploaded as %s", result.job_name, result.key)

    def send_error(self, job_name: str, error_message: str) -> None:
        logger.error("Backup %s failed: %s", job_name, error_message)


class MultiNotifier(Notifier):
    def __init__(self, notifiers: Iterable[Notifier]):
        self._notifiers = list(notifiers)

    def send_success(self, result: "RunResult") -> None:
        for n in self._notifiers:
            n.send_success(result)

    def send_error(self, job_name: str, error_message: str) -> None:
        for n in self._notifiers:
            n.send_error(job_name, error_message)
