"""
Admission control for CPU-heavy extractions.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from docmeter.core.exceptions import CapacityExceededError

logger = logging.getLogger(__name__)


class AdmissionController:
    """
    Bounds the number of extractions in flight.

    Requests over the bound are rejected at once with
    :class:`CapacityExceededError` instead of waiting in a queue.

    Example::

        admission = AdmissionController(max_in_flight=4)
        async with admission.slot():
            content = await extractor.extract_async(data, filename)
    """

    def __init__(self, max_in_flight: int):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.max_in_flight = max_in_flight
        self._in_flight = 0
        self._rejected = 0
        self._admitted = 0
        self._lock = asyncio.Lock()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self):
        async with self._lock:
            if self._in_flight >= self.max_in_flight:
                self._rejected += 1
                logger.warning(
                    "Rejecting extraction: %d/%d slots in use", self._in_flight, self.max_in_flight
                )
                raise CapacityExceededError(
                    "Too many files are being processed right now. Please retry shortly.",
                    details={"max_in_flight": self.max_in_flight},
                )
            self._in_flight += 1
            self._admitted += 1

        try:
            yield
        finally:
            self._in_flight -= 1

    def stats(self) -> dict:
        return {
            "max_in_flight": self.max_in_flight,
            "in_flight": self._in_flight,
            "admitted": self._admitted,
            "rejected": self._rejected,
        }
