from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple
import threading

from ..models.remote import AlarmThresholds
from ..utils.logging import get_logger

logger = get_logger(__name__)

NO_ALARM = "No Alarm"


@dataclass(frozen=True)
class EffectiveThresholds:
    upper: float
    lower: float
    deviation: float


@dataclass(frozen=True)
class ThresholdSnapshot:
    """Dynamic threshold layers. Replaced as a whole on every update."""
    global_override: Optional[AlarmThresholds] = None
    sensor_overrides: Mapping[str, AlarmThresholds] = field(
        default_factory=lambda: MappingProxyType({})
    )


def _pick(name: str, *layers: Optional[AlarmThresholds]) -> Optional[float]:
    for layer in layers:
        if layer is not None:
            value = getattr(layer, name)
            if value is not None:
                return value
    return None


class AlarmEvaluator:
    """
    Classifies samples against thresholds resolved per field as
    sensor override > global override > static default.

    Readers take one reference to the current snapshot, so an evaluation
    never sees half of an update.
    """
    def __init__(self, defaults: AlarmThresholds):
        if None in (defaults.upper, defaults.lower, defaults.deviation):
            raise ValueError("Default thresholds must define upper, lower and deviation")
        self.defaults = defaults
        self._snapshot = ThresholdSnapshot()
        self._write_lock = threading.Lock()

    @property
    def snapshot(self) -> ThresholdSnapshot:
        return self._snapshot

    def update_global(self, thresholds: Optional[AlarmThresholds]) -> None:
        """Replace the global layer. None clears it."""
        with self._write_lock:
            self._snapshot = replace(self._snapshot, global_override=thresholds)
        logger.info(f"Global alarm thresholds now {thresholds.model_dump() if thresholds else 'unset'}")

    def update_sensor(self, sensor_id: str, thresholds: Optional[AlarmThresholds]) -> None:
        """Replace one sensor's layer. None removes it."""
        with self._write_lock:
            overrides: Dict[str, AlarmThresholds] = dict(self._snapshot.sensor_overrides)
            if thresholds is None:
                overrides.pop(sensor_id, None)
            else:
                overrides[sensor_id] = thresholds
            self._snapshot = replace(self._snapshot, sensor_overrides=MappingProxyType(overrides))

    def replace_all(self, global_override: Optional[AlarmThresholds],
                    sensor_overrides: Mapping[str, AlarmThresholds]) -> None:
        """Swap both dynamic layers in one step."""
        with self._write_lock:
            self._snapshot = ThresholdSnapshot(
                global_override=global_override,
                sensor_overrides=MappingProxyType(dict(sensor_overrides)),
            )

    def effective_thresholds(self, sensor_id: str) -> EffectiveThresholds:
        snapshot = self._snapshot
        specific = snapshot.sensor_overrides.get(sensor_id)
        layers = (specific, snapshot.global_override, self.defaults)
        return EffectiveThresholds(
            upper=_pick('upper', *layers),
            lower=_pick('lower', *layers),
            deviation=_pick('deviation', *layers),
        )

    def evaluate(self, sensor_id: str, actual: Optional[float], predicted: Optional[float],
                 sensor_name: Optional[str] = None) -> Tuple[bool, str]:
        """
        Returns (triggered, message).

        Out of [lower, upper] triggers first; otherwise a prediction
        further than `deviation` from the actual value triggers.
        """
        prefix = f"Sensor [{sensor_name or sensor_id} ({sensor_id})] "
        if actual is None:
            return False, prefix + "unknown temperature"

        t = self.effective_thresholds(sensor_id)

        if actual > t.upper:
            return True, prefix + f"temperature too high: {actual:.2f}°C (threshold: {t.upper:.2f}°C)"
        if actual < t.lower:
            return True, prefix + f"temperature too low: {actual:.2f}°C (threshold: {t.lower:.2f}°C)"

        if predicted is not None:
            deviation = abs(actual - predicted)
            if deviation > t.deviation:
                return True, prefix + (
                    f"abnormal fluctuation: actual {actual:.2f}°C, predicted {predicted:.2f}°C "
                    f"(deviation: {deviation:.2f}°C, threshold: {t.deviation:.2f}°C)"
                )
        return False, NO_ALARM
