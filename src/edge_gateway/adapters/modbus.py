# modbus_adapter.py
import asyncio
from typing import Callable, Dict, List, Optional

import minimalmodbus
import serial

from .base import BusTransport
from ..models.sensor import Framing, LineSettings, RegisterKind
from ..utils.exceptions import TransportError
from ..utils.logging import get_logger

logger = get_logger(__name__)

_MODES = {
    Framing.RTU: minimalmodbus.MODE_RTU,
    Framing.ASCII: minimalmodbus.MODE_ASCII,
}


class ModbusRTUAdapter(BusTransport):
    """
    Modbus serial master for one physical port (RTU or ASCII framing).

    minimalmodbus is blocking, so each transaction runs in a worker
    thread while the connection gate is held. The serial timeout bounds
    how long a transaction can keep the gate.
    """
    def __init__(self, name: str, line: LineSettings, timeout: float = 3.0,
                 retries: int = 2, retry_delay: float = 0.05,
                 instrument_factory: Optional[Callable[..., minimalmodbus.Instrument]] = None):
        super().__init__(name, retries=retries, retry_delay=retry_delay)
        self.line = line
        self.timeout = timeout
        self._instrument_factory = instrument_factory or minimalmodbus.Instrument
        self._instruments: Dict[int, minimalmodbus.Instrument] = {}
        self._serial = None

    def _configure(self, instrument) -> None:
        port = instrument.serial
        port.baudrate = self.line.baud_rate
        port.bytesize = self.line.data_bits
        port.parity = self.line.parity.value
        port.stopbits = self.line.stop_bits
        port.timeout = self.timeout
        instrument.clear_buffers_before_each_transaction = True

    def _instrument(self, slave_id: int):
        instrument = self._instruments.get(slave_id)
        if instrument is None:
            # minimalmodbus shares one serial object between instruments on the same port
            instrument = self._instrument_factory(self.line.port, slave_id, _MODES[self.line.framing])
            self._configure(instrument)
            self._instruments[slave_id] = instrument
        return instrument

    def _open_port(self) -> None:
        instrument = self._instrument(1)
        self._serial = instrument.serial
        if not getattr(self._serial, 'is_open', True):
            self._serial.open()

    async def _open(self) -> None:
        try:
            await asyncio.to_thread(self._open_port)
        except (serial.SerialException, OSError, ValueError) as e:
            self._instruments.clear()
            raise TransportError(f"Cannot open {self.line.port}: {e}") from e
        logger.info(
            f"Modbus master '{self.name}' on {self.line.port}, baud={self.line.baud_rate}, "
            f"framing={self.line.framing.value}"
        )

    async def _close(self) -> None:
        if self._serial is not None:
            try:
                await asyncio.to_thread(self._serial.close)
            except Exception as e:
                logger.error(f"Error closing {self.line.port}: {e}")
                raise
            finally:
                self._instruments.clear()
                self._serial = None

    def _read_blocking(self, slave_id: int, kind: RegisterKind, address: int, count: int) -> List[int]:
        instrument = self._instrument(slave_id)
        return instrument.read_registers(address, count, functioncode=kind.function_code)

    async def _read(self, slave_id: int, kind: RegisterKind, address: int, count: int) -> List[int]:
        return await asyncio.to_thread(self._read_blocking, slave_id, kind, address, count)
