from typing import List, Optional, Sequence

from ..adapters.rest import RestAPIAdapter
from ..models.settings import PredictionSettings
from ..models.things import Reading
from ..utils.exceptions import CommunicationError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class PredictionClient:
    """
    Client for the remote prediction service.

    Both calls treat any failure as "no prediction available" and return
    None; a prediction is never required to keep a sample.
    """
    def __init__(self, settings: PredictionSettings, rest: RestAPIAdapter):
        self.settings = settings
        self.rest = rest

    async def predict_point(self, temperature: Optional[float], humidity: Optional[float] = None,
                            pressure: Optional[float] = None) -> Optional[float]:
        if temperature is None:
            return None
        payload = {"temperature": temperature, "humidity": humidity, "pressure": pressure}
        try:
            response = await self.rest.post(self.settings.url, payload, timeout=self.settings.timeout_s)
        except CommunicationError as e:
            logger.warning(f"Point prediction unavailable: {e}")
            return None

        if not isinstance(response, dict) or response.get("predicted_temperature") is None:
            logger.warning(f"Unexpected point prediction response: {response!r}")
            return None
        try:
            return float(response["predicted_temperature"])
        except (TypeError, ValueError):
            logger.warning(f"Non-numeric point prediction: {response['predicted_temperature']!r}")
            return None

    async def predict_trend(self, sensor_id: str, history: Sequence[Reading],
                            horizon_seconds: int) -> Optional[List[float]]:
        """
        Forecast temperatures for the next `horizon_seconds`, one value per
        history step, nearest first.
        """
        if not history:
            return None

        points = []
        for reading in history:
            point = {"timestamp": reading.timestamp.isoformat(), "temperature": reading.temperature}
            if reading.humidity is not None:
                point["humidity"] = reading.humidity
            if reading.pressure is not None:
                point["pressure"] = reading.pressure
            points.append(point)

        payload = {
            "sensorId": sensor_id,
            "historyData": points,
            "predictHorizonSeconds": horizon_seconds,
        }
        try:
            response = await self.rest.post(self.settings.trend_url, payload, timeout=self.settings.timeout_s)
        except CommunicationError as e:
            logger.warning(f"Trend prediction unavailable for {sensor_id}: {e}")
            return None

        forecast = response.get("forecast_temperatures") if isinstance(response, dict) else None
        if not isinstance(forecast, list):
            logger.warning(f"Unexpected trend prediction response for {sensor_id}: {response!r}")
            return None
        try:
            return [float(value) for value in forecast]
        except (TypeError, ValueError):
            logger.warning(f"Non-numeric trend forecast for {sensor_id}")
            return None
