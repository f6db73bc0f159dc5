from typing import List, Optional
from pydantic import BaseModel, Field, model_validator

from .sensor import (
    ConnectionDefinition, SensorDefinition, LineSettings, Framing, Parity
)
from .remote import AlarmThresholds


class APISettings(BaseModel):
    host: str = Field("0.0.0.0", description="API bind address")
    port: int = Field(8000, description="API port")


class LoggingSettings(BaseModel):
    level: str = Field("INFO", description="Root log level")
    file: Optional[str] = Field("logs/edge_gateway.log", description="Rotating log file, empty for console only")
    max_size: int = Field(10, description="Max log file size in MB")
    backup_count: int = Field(5, description="Rotated files to keep")
    format: Optional[str] = Field(None, description="Log record format")


class DatabaseSettings(BaseModel):
    path: str = Field("edge_gateway.db", description="SQLite database file")
    pool_size: int = Field(5, ge=1, description="Pooled connections")


class SerialDefaults(BaseModel):
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: Parity = Parity.NONE
    framing: Framing = Framing.RTU


class ModbusSettings(BaseModel):
    poll_interval_ms: int = Field(1000, gt=0, description="Target interval between two samples of one sensor")
    min_period_ms: int = Field(50, gt=0, description="Floor for a connection's tick period")
    timeout_s: float = Field(3.0, gt=0, description="Per-transaction serial timeout")
    retries: int = Field(2, ge=0, description="Fixed retries per register read")
    retry_delay_s: float = Field(0.05, ge=0, description="Pause between read retries")
    serial: SerialDefaults = Field(default_factory=SerialDefaults)
    connections: List[ConnectionDefinition] = Field(default_factory=list)
    sensors: List[SensorDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_ids(self):
        sensor_ids = [s.sensor_id for s in self.sensors]
        if len(sensor_ids) != len(set(sensor_ids)):
            raise ValueError("sensor_id values must be unique")
        names = [c.name for c in self.connections]
        if len(names) != len(set(names)):
            raise ValueError("connection names must be unique")
        return self

    def line_settings(self, connection: ConnectionDefinition) -> LineSettings:
        """Connection parameters with the serial defaults filled in."""
        defaults = self.serial
        return LineSettings(
            port=connection.port,
            baud_rate=connection.baud_rate or defaults.baud_rate,
            data_bits=connection.data_bits or defaults.data_bits,
            stop_bits=connection.stop_bits or defaults.stop_bits,
            parity=connection.parity or defaults.parity,
            framing=connection.framing or defaults.framing,
        )


class AlarmSettings(BaseModel):
    upper: float = Field(30.0, description="Default upper temperature bound")
    lower: float = Field(10.0, description="Default lower temperature bound")
    deviation: float = Field(2.0, description="Default allowed |actual - predicted|")

    def as_thresholds(self) -> AlarmThresholds:
        return AlarmThresholds(upper=self.upper, lower=self.lower, deviation=self.deviation)


class RetentionSettings(BaseModel):
    realtime_minutes: int = Field(10, gt=0, description="Raw rows older than this are aggregated to MINUTELY")
    minutely_hours: int = Field(24, gt=0, description="MINUTELY rows older than this are aggregated to HOURLY")
    hourly_days: int = Field(7, gt=0, description="HOURLY rows older than this are purged once exported")
    compaction_interval_s: float = Field(60.0, gt=0, description="Compaction period")


class ExportSettings(BaseModel):
    url: str = Field("http://localhost:8080/api/sensor-data", description="Single record endpoint")
    batch_path: str = Field("/batch", description="Suffix appended to url for batches")
    batch_size: int = Field(50, gt=0, description="Max readings per sweep")
    batch_interval_s: float = Field(30.0, gt=0, description="Sweep period")
    timeout_s: float = Field(10.0, gt=0, description="Caller-side request timeout")


class TrendSettings(BaseModel):
    enabled: bool = True
    history_minutes: int = Field(10, gt=0)
    horizon_seconds: int = Field(60, gt=0)
    check_interval_s: float = Field(30.0, gt=0)
    step_seconds: int = Field(5, gt=0, description="Spacing of history and forecast points")
    min_coverage: float = Field(0.8, gt=0, le=1.0, description="Share of expected history points required")


class PredictionSettings(BaseModel):
    url: str = Field("http://localhost:5000/predict", description="Single point prediction")
    trend_url: str = Field("http://localhost:5000/predict_trend", description="Trend prediction")
    timeout_s: float = Field(5.0, gt=0)
    trend: TrendSettings = Field(default_factory=TrendSettings)


class ConfigSyncSettings(BaseModel):
    enabled: bool = True
    url: str = Field("http://localhost:8080/api/device/{device_id}/config")
    interval_s: float = Field(300.0, gt=0)
    timeout_s: float = Field(10.0, gt=0)


class EnrichmentSettings(BaseModel):
    workers: int = Field(5, ge=1)
    queue_size: int = Field(25, ge=1)


class GatewaySettings(BaseModel):
    """Validated view of the YAML configuration file"""
    device_id: str = "edge-001"
    api: APISettings = Field(default_factory=APISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    modbus: ModbusSettings = Field(default_factory=ModbusSettings)
    alarm: AlarmSettings = Field(default_factory=AlarmSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)
    prediction: PredictionSettings = Field(default_factory=PredictionSettings)
    config_sync: ConfigSyncSettings = Field(default_factory=ConfigSyncSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
