from types import MappingProxyType
from typing import Awaitable, Callable, Dict, List, Mapping, Optional
import asyncio
import threading
import traceback

from ..adapters.base import BusTransport
from ..adapters.modbus import ModbusRTUAdapter
from ..models.sensor import ConnectionDefinition, SensorDefinition, group_by_connection
from ..models.settings import ModbusSettings
from ..models.things import Reading
from ..sensors.registers import decode_block, decode_register, plan_block
from ..utils.exceptions import CommunicationError, DecodeError
from ..utils.logging import get_logger
from .ingest import SampleIngestor

logger = get_logger(__name__)

TransportFactory = Callable[[ConnectionDefinition], BusTransport]


class PeriodicTask:
    """
    Runs `callback` at a fixed rate on its own asyncio task.

    `reschedule` changes the period without interrupting a run in progress;
    `cancel` lets the current run finish and then stops. A run that takes
    longer than the period is followed immediately by the next one, runs
    never overlap.
    """
    def __init__(self, name: str, callback: Callable[[], Awaitable[object]], period: float):
        if period <= 0:
            raise ValueError("period must be positive")
        self.name = name
        self.period = period
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._cancelled = False
        self._task = asyncio.create_task(self._run(), name=self.name)

    def reschedule(self, period: float) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        if period != self.period:
            logger.info(f"Task '{self.name}' rescheduled from {self.period:.3f}s to {period:.3f}s")
        self.period = period
        self._wake.set()

    def cancel(self) -> None:
        self._cancelled = True
        self._wake.set()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._cancelled:
            started = loop.time()
            try:
                await self._callback()
            except Exception:
                logger.error(f"Error in periodic task '{self.name}': {traceback.format_exc()}")

            self._wake.clear()
            while not self._cancelled:
                remaining = started + self.period - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                # Woken by reschedule: recompute against the new period
                self._wake.clear()


class PollIntervals:
    """
    Effective per-sensor poll interval: dynamic override, then the
    sensor's static override, then the global default.
    Dynamic overrides are an immutable mapping swapped on each update.
    """
    def __init__(self, default_ms: int):
        self.default_ms = default_ms
        self._overrides: Mapping[str, int] = MappingProxyType({})
        self._write_lock = threading.Lock()

    @property
    def overrides(self) -> Mapping[str, int]:
        return self._overrides

    def set(self, sensor_id: str, interval_ms: Optional[int]) -> None:
        if interval_ms is not None and interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        with self._write_lock:
            updated = dict(self._overrides)
            if interval_ms is None:
                updated.pop(sensor_id, None)
            else:
                updated[sensor_id] = interval_ms
            self._overrides = MappingProxyType(updated)

    def replace_all(self, overrides: Mapping[str, int]) -> None:
        with self._write_lock:
            self._overrides = MappingProxyType(dict(overrides))

    def effective(self, sensor: SensorDefinition) -> int:
        override = self._overrides.get(sensor.sensor_id)
        if override is not None:
            return override
        return sensor.poll_interval_ms or self.default_ms


class ConnectionScheduler:
    """
    Round-robin sampling of the sensors sharing one connection.

    Each tick services exactly one sensor. Every register read of that
    sensor goes out as one gated transaction, so sensors on the same port
    never interleave on the wire.
    """
    def __init__(self, name: str, transport: BusTransport, sensors: List[SensorDefinition],
                 ingestor: SampleIngestor, intervals: PollIntervals, min_period_ms: int = 50):
        if not sensors:
            raise ValueError(f"Connection '{name}' has no sensors")
        self.name = name
        self.transport = transport
        self.sensors = list(sensors)
        self.ingestor = ingestor
        self.intervals = intervals
        self.min_period_ms = min_period_ms
        self.cursor = 0
        self.task: Optional[PeriodicTask] = None

    def next_sensor(self) -> SensorDefinition:
        sensor = self.sensors[self.cursor]
        self.cursor = (self.cursor + 1) % len(self.sensors)
        return sensor

    def period_ms(self) -> float:
        """
        Tick period: the tightest per-sensor interval on this connection
        shared out over its sensors, never below the floor.
        """
        target = min(self.intervals.effective(s) for s in self.sensors)
        return max(float(self.min_period_ms), target / len(self.sensors))

    async def sample(self, sensor: SensorDefinition) -> Optional[Dict[str, Optional[float]]]:
        """
        Read and decode every configured measurement of `sensor`.

        Returns None when the sample has to be dropped: no temperature
        register configured, or the temperature could not be read.
        Humidity and pressure come back as None on their own failures.
        """
        registers = sensor.registers()
        if 'temperature' not in registers:
            logger.warning(f"Sensor {sensor.sensor_id} has no temperature register, skipping")
            return None

        values: Dict[str, Optional[float]] = {}
        try:
            block = plan_block(registers) if sensor.combined_read else None
            if block is not None:
                kind, start, count = block
                (words,) = await self.transport.read_many(sensor.slave_id, [(kind, start, count)])
                if words is None:
                    values = {name: None for name in registers}
                else:
                    values = decode_block(start, words, registers)
            else:
                requests = [(r.register_type, r.address, r.word_count) for r in registers.values()]
                # Temperature comes first; without it the sample is dropped anyway
                results = await self.transport.read_many(sensor.slave_id, requests, required=1)
                for (name, register), words in zip(registers.items(), results):
                    if words is None:
                        values[name] = None
                        continue
                    try:
                        values[name] = decode_register(words, register)
                    except DecodeError as e:
                        logger.warning(f"Cannot decode {name} of {sensor.sensor_id}: {e}")
                        values[name] = None
        except CommunicationError as e:
            logger.warning(f"Polling {sensor.sensor_id} on '{self.name}' failed: {e}")
            return None

        if values.get('temperature') is None:
            logger.warning(f"No temperature from {sensor.display_name} ({sensor.sensor_id}), sample skipped")
            return None
        return values

    async def tick(self) -> Optional[Reading]:
        sensor = self.next_sensor()
        loop = asyncio.get_running_loop()
        started = loop.time()

        values = await self.sample(sensor)
        if values is None:
            return None
        reading = await self.ingestor.ingest(sensor, values)
        logger.debug(
            f"Polled {sensor.display_name} ({sensor.sensor_id}) on '{self.name}' "
            f"in {(loop.time() - started) * 1000:.0f}ms"
        )
        return reading

    def start(self) -> None:
        period = self.period_ms()
        self.task = PeriodicTask(f"poll-{self.name}", self.tick, period / 1000.0)
        self.task.start()
        logger.info(
            f"Polling '{self.name}': {len(self.sensors)} sensors, period {period:.0f}ms "
            f"(per sensor ~{period * len(self.sensors):.0f}ms)"
        )

    def reschedule(self) -> None:
        if self.task is not None:
            self.task.reschedule(self.period_ms() / 1000.0)

    async def stop(self) -> None:
        if self.task is not None:
            self.task.cancel()
            await self.task.wait()
            self.task = None


class PollingService:
    """
    Owns every connection and its scheduler.

    Connections open independently: one that fails to open leaves its
    sensors unpolled and the rest of the gateway running.
    """
    def __init__(self, settings: ModbusSettings, ingestor: SampleIngestor,
                 transport_factory: Optional[TransportFactory] = None):
        self.settings = settings
        self.ingestor = ingestor
        self.intervals = PollIntervals(settings.poll_interval_ms)
        self.transports: Dict[str, BusTransport] = {}
        self.schedulers: Dict[str, ConnectionScheduler] = {}
        self._transport_factory = transport_factory or self._modbus_transport

    def _modbus_transport(self, connection: ConnectionDefinition) -> BusTransport:
        return ModbusRTUAdapter(
            connection.name,
            self.settings.line_settings(connection),
            timeout=self.settings.timeout_s,
            retries=self.settings.retries,
            retry_delay=self.settings.retry_delay_s,
        )

    @property
    def sensors(self) -> List[SensorDefinition]:
        return list(self.settings.sensors)

    async def initialize(self) -> None:
        logger.info("Initializing polling service")
        connections = {c.name: c for c in self.settings.connections}

        for name, sensors in group_by_connection(self.settings.sensors).items():
            connection = connections.get(name)
            if connection is None:
                logger.error(f"Sensors {[s.sensor_id for s in sensors]} reference unknown connection '{name}'")
                continue

            transport = self._transport_factory(connection)
            try:
                await transport.connect()
            except CommunicationError as e:
                logger.error(f"Connection '{name}' unavailable, its {len(sensors)} sensors will not be polled: {e}")
                continue

            self.transports[name] = transport
            self.schedulers[name] = ConnectionScheduler(
                name, transport, sensors, self.ingestor, self.intervals,
                min_period_ms=self.settings.min_period_ms,
            )

        if not self.schedulers:
            logger.warning("No connection could be opened, nothing will be polled")
        else:
            logger.info(f"Polling service ready with {len(self.schedulers)} connections")

    def start(self) -> None:
        for scheduler in self.schedulers.values():
            scheduler.start()

    def scheduler_for(self, sensor_id: str) -> Optional[ConnectionScheduler]:
        for scheduler in self.schedulers.values():
            if any(s.sensor_id == sensor_id for s in scheduler.sensors):
                return scheduler
        return None

    def update_sensor_interval(self, sensor_id: str, interval_ms: Optional[int]) -> None:
        """Override one sensor's interval (None reverts it) and retime its connection."""
        self.intervals.set(sensor_id, interval_ms)
        scheduler = self.scheduler_for(sensor_id)
        if scheduler is not None:
            scheduler.reschedule()
        logger.info(f"Poll interval of {sensor_id} set to {interval_ms if interval_ms else 'default'}")

    def replace_intervals(self, overrides: Mapping[str, int]) -> None:
        self.intervals.replace_all(overrides)
        for scheduler in self.schedulers.values():
            scheduler.reschedule()

    async def stop(self) -> None:
        for scheduler in self.schedulers.values():
            await scheduler.stop()
        for name, transport in self.transports.items():
            try:
                await transport.disconnect()
            except Exception as e:
                logger.error(f"Error closing connection '{name}': {e}")
        logger.info("Polling service stopped")
