# Abstract base classes for protocol adapters
# Each adapter implements the interface defined in base.py

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional, Sequence, Tuple
import asyncio

from ..models.sensor import RegisterKind
from ..utils.exceptions import TransportError
from ..utils.logging import get_logger
from ..utils.retry import retry_call

logger = get_logger(__name__)

# (register space, start address, word count)
RegisterRequest = Tuple[RegisterKind, int, int]


# Protocol Adapters
class CommunicationAdapter(ABC):
    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


class ConnectionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    BUSY = "busy"


class BusTransport(CommunicationAdapter):
    """
    Base class for a half-duplex field bus connection.

    One instance per physical port. Every exchange goes through the
    connection gate, so at most one transaction is on the wire at any
    time no matter how many sensors share the port.
    Implementations provide `_open`, `_close` and `_read`.
    """
    def __init__(self, name: str, retries: int = 2, retry_delay: float = 0.05):
        self.name = name
        self.state = ConnectionState.CLOSED
        self._retry_count = retries
        self._retry_delay = retry_delay
        self._gate = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.OPEN, ConnectionState.BUSY)

    @abstractmethod
    async def _open(self) -> None:
        pass

    @abstractmethod
    async def _close(self) -> None:
        pass

    @abstractmethod
    async def _read(self, slave_id: int, kind: RegisterKind, address: int, count: int) -> List[int]:
        """One protocol read. Called with the gate held."""
        pass

    async def connect(self) -> None:
        self.state = ConnectionState.OPENING
        try:
            await self._open()
        except Exception as e:
            self.state = ConnectionState.CLOSED
            raise TransportError(f"Failed to open connection '{self.name}': {e}") from e
        self.state = ConnectionState.OPEN
        logger.info(f"Connection '{self.name}' open")

    async def disconnect(self) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        async with self._gate:
            try:
                await self._close()
            finally:
                self.state = ConnectionState.CLOSED
        logger.info(f"Connection '{self.name}' closed")

    async def read_many(self, slave_id: int, requests: Sequence[RegisterRequest],
                        required: int = 0) -> List[Optional[List[int]]]:
        """
        Run several reads for one device as a single gated transaction.

        Each read gets the fixed number of retries; a read that still fails
        comes back as None so the caller can decide what is optional.
        When one of the first `required` reads fails, the rest are not sent
        and come back as None, so a dead device releases the port early.
        """
        if not self.is_connected:
            raise TransportError(f"Connection '{self.name}' is not open")

        results: List[Optional[List[int]]] = []
        abandoned = False
        async with self._gate:
            self.state = ConnectionState.BUSY
            try:
                for index, (kind, address, count) in enumerate(requests):
                    if abandoned:
                        results.append(None)
                        continue
                    try:
                        words = await retry_call(
                            self._read, slave_id, kind, address, count,
                            max_retries=self._retry_count,
                            delay=self._retry_delay,
                        )
                        results.append(list(words))
                    except Exception as e:
                        logger.warning(
                            f"Read failed on '{self.name}' [slave={slave_id}, "
                            f"{kind.value} {address}+{count}]: {e}"
                        )
                        results.append(None)
                        abandoned = index < required
            finally:
                if self.state is ConnectionState.BUSY:
                    self.state = ConnectionState.OPEN
        return results
