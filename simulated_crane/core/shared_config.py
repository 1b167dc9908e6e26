"""Process-wide crane settings shared by the telemetry loop and direct methods."""

from __future__ import annotations

import math
import threading
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .. import constants

_THOUSANDTHS = Decimal("0.001")
# Past this magnitude a float carries no thousandths worth rounding.
_ROUNDING_LIMIT = 1e15


def round3(value: float) -> float:
    """Round half-up to three decimal places.

    The value is quantised from its shortest repr so that ``13.0005`` rounds
    to ``13.001`` instead of being dragged down by binary representation.
    """
    if not math.isfinite(value) or abs(value) >= _ROUNDING_LIMIT:
        return value
    return float(Decimal(repr(value)).quantize(_THOUSANDTHS, rounding=ROUND_HALF_UP))


class SharedConfig:
    """Lock-guarded telemetry interval and height increment.

    Each field is read and written as a whole under the lock, and
    ``scale_height_increment`` performs its read-modify-write atomically so
    concurrent direct methods never lose an update.
    """

    def __init__(
        self,
        telemetry_interval_millis: int = constants.DEFAULT_TELEMETRY_INTERVAL_MS,
        height_increment: float = constants.DEFAULT_HEIGHT_INCREMENT,
    ) -> None:
        self._lock = threading.Lock()
        self._telemetry_interval_millis = int(telemetry_interval_millis)
        self._height_increment = float(height_increment)

    @property
    def telemetry_interval_millis(self) -> int:
        with self._lock:
            return self._telemetry_interval_millis

    @telemetry_interval_millis.setter
    def telemetry_interval_millis(self, value: int) -> None:
        with self._lock:
            self._telemetry_interval_millis = int(value)

    @property
    def telemetry_interval_seconds(self) -> float:
        return self.telemetry_interval_millis / 1000.0

    @property
    def height_increment(self) -> float:
        with self._lock:
            return self._height_increment

    @height_increment.setter
    def height_increment(self, value: float) -> None:
        with self._lock:
            self._height_increment = float(value)

    def scale_height_increment(
        self, factor: float, *, limit: Optional[float] = None
    ) -> tuple[float, float]:
        """Multiply the increment by ``factor`` and return ``(old, new)``.

        Raises ``ValueError`` and leaves the increment untouched when the
        result is not finite or its magnitude exceeds ``limit``.
        """
        with self._lock:
            previous = self._height_increment
            updated = round3(factor * previous)
            if not math.isfinite(updated) or (
                limit is not None and abs(updated) > limit
            ):
                raise ValueError(f"Height increment {updated!r} out of range")
            self._height_increment = updated
            return previous, updated

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return {
                "telemetry_interval_millis": self._telemetry_interval_millis,
                "height_increment": self._height_increment,
            }

    def __repr__(self) -> str:
        values = self.snapshot()
        return (
            "SharedConfig("
            f"telemetry_interval_millis={values['telemetry_interval_millis']}, "
            f"height_increment={values['height_increment']})"
        )
