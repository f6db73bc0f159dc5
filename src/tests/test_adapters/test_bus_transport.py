import asyncio
import threading
import time
import pytest
from unittest.mock import MagicMock

from edge_gateway.adapters.base import BusTransport, ConnectionState
from edge_gateway.adapters.modbus import ModbusRTUAdapter
from edge_gateway.models.sensor import LineSettings, RegisterKind
from edge_gateway.utils.exceptions import TransportError


class FlakyTransport(BusTransport):
    def __init__(self, failures=0, fail_open=False):
        super().__init__("test-bus", retries=2, retry_delay=0)
        self.failures = failures
        self.fail_open = fail_open
        self.calls = 0

    async def _open(self):
        if self.fail_open:
            raise OSError("no such port")

    async def _close(self):
        pass

    async def _read(self, slave_id, kind, address, count):
        self.calls += 1
        if self.calls <= self.failures:
            raise IOError("no response")
        return [address] * count


def slow_instrument_factory(log, delay=0.02):
    lock = threading.Lock()

    class SlowInstrument:
        def __init__(self, port, slave, mode):
            self.serial = MagicMock()
            self.slave = slave

        def read_registers(self, address, count, functioncode=3):
            start = time.monotonic()
            time.sleep(delay)
            end = time.monotonic()
            with lock:
                log.append((start, end, self.slave, functioncode))
            return [250] * count

    return SlowInstrument


@pytest.mark.asyncio
async def test_transactions_on_one_connection_never_overlap():
    log = []
    adapter = ModbusRTUAdapter(
        "bus1", LineSettings(port="/dev/ttyTEST0"),
        instrument_factory=slow_instrument_factory(log),
    )
    await adapter.connect()

    requests = [(RegisterKind.HOLDING, 0, 1), (RegisterKind.INPUT, 1, 1)]
    await asyncio.gather(*[
        adapter.read_many(slave_id, requests)
        for slave_id in (1, 2, 3)
        for _ in range(3)
    ])

    assert len(log) == 18
    intervals = sorted((start, end) for start, end, _, _ in log)
    for (_, previous_end), (next_start, _) in zip(intervals, intervals[1:]):
        assert next_start >= previous_end

    await adapter.disconnect()
    assert adapter.state is ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_read_uses_function_code_of_register_space():
    log = []
    adapter = ModbusRTUAdapter(
        "bus1", LineSettings(port="/dev/ttyTEST0"),
        instrument_factory=slow_instrument_factory(log, delay=0),
    )
    await adapter.connect()

    results = await adapter.read_many(7, [(RegisterKind.HOLDING, 0, 2), (RegisterKind.INPUT, 5, 1)])

    assert results == [[250, 250], [250]]
    assert [(slave, code) for _, _, slave, code in log] == [(7, 3), (7, 4)]


@pytest.mark.asyncio
async def test_read_retries_then_succeeds():
    transport = FlakyTransport(failures=2)
    await transport.connect()

    results = await transport.read_many(1, [(RegisterKind.HOLDING, 4, 2)])

    assert results == [[4, 4]]
    assert transport.calls == 3
    assert transport.state is ConnectionState.OPEN


@pytest.mark.asyncio
async def test_exhausted_retries_give_none_and_later_reads_continue():
    transport = FlakyTransport(failures=3)
    await transport.connect()

    results = await transport.read_many(1, [(RegisterKind.HOLDING, 0, 1), (RegisterKind.HOLDING, 9, 1)])

    assert results == [None, [9]]


@pytest.mark.asyncio
async def test_read_on_closed_connection_raises():
    transport = FlakyTransport()
    with pytest.raises(TransportError):
        await transport.read_many(1, [(RegisterKind.HOLDING, 0, 1)])


@pytest.mark.asyncio
async def test_failed_open_leaves_connection_closed():
    transport = FlakyTransport(fail_open=True)
    with pytest.raises(TransportError):
        await transport.connect()
    assert transport.state is ConnectionState.CLOSED
    assert not transport.is_connected


@pytest.mark.asyncio
async def test_failed_required_read_skips_the_rest():
    transport = FlakyTransport(failures=3)
    await transport.connect()

    results = await transport.read_many(
        1, [(RegisterKind.HOLDING, 0, 1), (RegisterKind.HOLDING, 1, 1), (RegisterKind.HOLDING, 2, 1)],
        required=1,
    )

    assert results == [None, None, None]
    assert transport.calls == 3
    assert transport.state is ConnectionState.OPEN
