# src/edge_gateway/__main__.py
import asyncio
import signal
import sys
import yaml
from pathlib import Path
from typing import List, Optional
from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HyperConfig
from pydantic import ValidationError
import traceback

from edge_gateway.adapters.rest import RestAPIAdapter
from edge_gateway.api.routes import sensor_router
from edge_gateway.core.alarm import AlarmEvaluator
from edge_gateway.core.compaction import CompactionEngine
from edge_gateway.core.config_sync import ConfigSync
from edge_gateway.core.export import ExportPipeline
from edge_gateway.core.ingest import EnrichmentPool, SampleIngestor
from edge_gateway.core.polling import PollingService
from edge_gateway.core.prediction import PredictionClient
from edge_gateway.core.queries import GatewayQueries
from edge_gateway.core.trend import TrendMonitor
from edge_gateway.models.settings import GatewaySettings, APISettings
from edge_gateway.storage.cache import LatestReadingCache
from edge_gateway.storage.sensor_database import SensorDatabase
from edge_gateway.utils.logging import setup_logging, get_logger
from edge_gateway.utils.exceptions import ConfigurationError, InitializationError


class AppState:
    """Holds application state and components"""
    def __init__(self):
        self.db: Optional[SensorDatabase] = None
        self.rest: Optional[RestAPIAdapter] = None
        self.cache: Optional[LatestReadingCache] = None
        self.alarms: Optional[AlarmEvaluator] = None
        self.prediction: Optional[PredictionClient] = None
        self.exporter: Optional[ExportPipeline] = None
        self.enrichment: Optional[EnrichmentPool] = None
        self.ingestor: Optional[SampleIngestor] = None
        self.polling: Optional[PollingService] = None
        self.compaction: Optional[CompactionEngine] = None
        self.config_sync: Optional[ConfigSync] = None
        self.trend: Optional[TrendMonitor] = None
        self.queries: Optional[GatewayQueries] = None


class ConfigManager:
    """Manages configuration loading and validation"""

    @staticmethod
    def load_config(config_path: str) -> GatewaySettings:
        """Load and validate configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f)
                if config is None:
                    raise ConfigurationError("Configuration file is empty or incorrectly formatted")
                if not isinstance(config, dict):
                    raise ConfigurationError("Configuration file must contain a mapping at the top level")
                return GatewaySettings.model_validate(config)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing configuration file: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")


class APIServer:
    """Handles API server initialization and management"""

    def __init__(self, config: APISettings, shutdown_event: asyncio.Event, app_state: AppState):
        self.config = config
        self.shutdown_event = shutdown_event
        self.logger = get_logger("API Server")
        self.app: Optional[FastAPI] = None
        self.app_state = app_state

    async def initialize(self) -> FastAPI:
        """Initialize FastAPI application with routes"""
        try:
            self.app = FastAPI(
                title="Edge Gateway API",
                description="Sensor readings, alarms and runtime tuning of the edge gateway",
                version="1.0.0"
            )
            # Store app state for dependency injection
            self.app.state.components = self.app_state

            self.app.include_router(sensor_router, prefix="/api/v1")
            return self.app
        except Exception as e:
            raise InitializationError(f"Failed to initialize API server: {e}")

    async def start(self):
        """Start the API server"""
        if not self.app:
            await self.initialize()

        hypercorn_config = HyperConfig()
        try:
            host = self.config.host
            port = self.config.port
            hypercorn_config.bind = [f"{host}:{port}"]

            async def shutdown_trigger():
                await self.shutdown_event.wait()
                return

            self.logger.info(f"Starting API server on {host}:{port}")
            await serve(self.app, hypercorn_config, shutdown_trigger=shutdown_trigger)
        except Exception:
            self.logger.error(f"Failed to start API server: {traceback.format_exc()}")
            raise


class EdgeGatewayApp:
    """Main edge gateway application class"""

    def __init__(self, config_path: str):
        self.logger = get_logger("Main App")
        try:
            self.settings = ConfigManager.load_config(config_path)
            setup_logging(self.settings.logging.model_dump())
        except ConfigurationError:
            self.logger.error(f"Configuration error: {traceback.format_exc()}")
            sys.exit(1)

        self.shutdown_event = asyncio.Event()
        self.app_state = AppState()
        self.api_server = APIServer(self.settings.api, self.shutdown_event, self.app_state)
        self._tasks: List[asyncio.Task] = []
        self._shutting_down = False

    async def initialize_components(self):
        """Initialize all application components"""
        settings = self.settings
        state = self.app_state
        try:
            state.db = SensorDatabase(settings.database.path, settings.database.pool_size)
            await state.db.initialize()

            state.cache = LatestReadingCache()
            await state.cache.rebuild(state.db.readings, [s.sensor_id for s in settings.modbus.sensors])

            state.rest = RestAPIAdapter(timeout=settings.export.timeout_s)
            await state.rest.connect()

            state.alarms = AlarmEvaluator(settings.alarm.as_thresholds())
            state.prediction = PredictionClient(settings.prediction, state.rest)
            state.exporter = ExportPipeline(settings.export, state.db.readings, state.rest)
            state.enrichment = EnrichmentPool(
                state.prediction, state.alarms, state.db.readings, state.cache, state.exporter,
                workers=settings.enrichment.workers,
                queue_size=settings.enrichment.queue_size,
            )
            state.ingestor = SampleIngestor(settings.device_id, state.db.readings, state.cache, state.enrichment)

            state.polling = PollingService(settings.modbus, state.ingestor)
            await state.polling.initialize()

            state.compaction = CompactionEngine(state.db.readings, settings.retention)
            state.config_sync = ConfigSync(
                settings.config_sync, settings.device_id, state.rest, state.alarms,
                polling=state.polling, exporter=state.exporter,
            )
            state.trend = TrendMonitor(
                settings.prediction.trend, settings.device_id, settings.modbus.sensors,
                state.db.readings, state.prediction, state.alarms, state.exporter,
            )
            state.queries = GatewayQueries(
                state.db.readings, state.cache, settings.retention, state.alarms, state.polling
            )
            self.logger.info("All components initialized successfully")
        except Exception as e:
            raise InitializationError(f"Failed to initialize components: {e}") from e

    def start_services(self) -> None:
        """Start polling and the periodic background loops"""
        state = self.app_state
        state.enrichment.start()
        state.polling.start()

        loops = [state.exporter.run(), state.compaction.run()]
        if self.settings.config_sync.enabled:
            loops.append(state.config_sync.run())
        if self.settings.prediction.trend.enabled:
            loops.append(state.trend.run())
        self._tasks = [asyncio.create_task(loop) for loop in loops]

    async def shutdown(self):
        """Gracefully shutdown all components"""
        if self._shutting_down:
            return
        self._shutting_down = True
        self.logger.info("Initiating shutdown sequence")
        state = self.app_state
        try:
            for component in (state.exporter, state.compaction, state.config_sync, state.trend):
                if component:
                    component.stop()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)

            if state.polling:
                await state.polling.stop()
            if state.enrichment:
                await state.enrichment.stop()
            if state.rest:
                await state.rest.disconnect()
            if state.db:
                await state.db.close()

            self.logger.info("Shutdown completed successfully")
        except Exception:
            self.logger.error(f"Error during shutdown: {traceback.format_exc()}")
        finally:
            self.shutdown_event.set()

    def handle_signals(self):
        """Set up signal handlers for graceful shutdown"""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}")
            asyncio.create_task(self.shutdown())

        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, signal_handler)

    async def run(self):
        """Main application entry point"""
        try:
            self.handle_signals()
            await self.initialize_components()
            self.start_services()
            await self.api_server.start()
        except InitializationError:
            self.logger.error(f"Initialization error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)
        except Exception:
            self.logger.error(f"Unexpected error: {traceback.format_exc()}")
            await self.shutdown()
            sys.exit(1)


def create_default_config(config_path: Path):
    """Create default configuration file if it doesn't exist"""
    if not config_path.exists():
        example_config = """
device_id: "edge-001"

api:
  host: "0.0.0.0"
  port: 8000

database:
  path: "edge_gateway.db"
  pool_size: 5

modbus:
  poll_interval_ms: 1000
  min_period_ms: 50
  timeout_s: 3.0
  retries: 2
  serial:
    baud_rate: 9600
    data_bits: 8
    stop_bits: 1
    parity: "N"
    framing: "rtu"
  connections:
    - name: "bus1"
      port: "/dev/ttyUSB0"
  sensors:
    - sensor_id: "sensor1"
      sensor_name: "Cold room"
      connection: "bus1"
      slave_id: 1
      temperature:
        register_type: "holding"
        address: 0
        data_type: "int16"
        scale: 0.1
      humidity:
        register_type: "holding"
        address: 1
        data_type: "uint16"
        scale: 0.1

alarm:
  upper: 30.0
  lower: 10.0
  deviation: 2.0

retention:
  realtime_minutes: 10
  minutely_hours: 24
  hourly_days: 7
  compaction_interval_s: 60

export:
  url: "http://localhost:8080/api/sensor-data"
  batch_size: 50
  batch_interval_s: 30
  timeout_s: 10

prediction:
  url: "http://localhost:5000/predict"
  trend_url: "http://localhost:5000/predict_trend"
  timeout_s: 5
  trend:
    enabled: true
    history_minutes: 10
    horizon_seconds: 60
    check_interval_s: 30

config_sync:
  enabled: true
  url: "http://localhost:8080/api/device/{device_id}/config"
  interval_s: 300

enrichment:
  workers: 5
  queue_size: 25

logging:
  level: "INFO"
  file: "logs/edge_gateway.log"
  max_size: 10
  backup_count: 5
  format: "%(asctime)s - %(name)s - [%(levelname)s] - %(message)s"
"""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(example_config)
        print(f"Created default config at {config_path}")


def main():
    """Application entry point"""
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("config/default.yml")
    create_default_config(config_path)

    app = EdgeGatewayApp(str(config_path))
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
