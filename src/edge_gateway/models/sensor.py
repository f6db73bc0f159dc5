from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class RegisterKind(str, Enum):
    HOLDING = "holding"
    INPUT = "input"

    @property
    def function_code(self) -> int:
        return 3 if self is RegisterKind.HOLDING else 4


class DataType(str, Enum):
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def word_count(self) -> int:
        return _WORD_COUNTS[self]


_WORD_COUNTS = {
    DataType.UINT16: 1,
    DataType.INT16: 1,
    DataType.UINT32: 2,
    DataType.INT32: 2,
    DataType.FLOAT32: 2,
    DataType.FLOAT64: 4,
}


class ByteOrder(str, Enum):
    """
    Byte order of a multi-byte value, lettered from most to least
    significant byte as the device sends them.
    """
    ABCD = "ABCD"  # big endian
    DCBA = "DCBA"  # little endian
    BADC = "BADC"  # big endian words, bytes swapped inside each word
    CDAB = "CDAB"  # little endian words, bytes kept inside each word


class Framing(str, Enum):
    RTU = "rtu"
    ASCII = "ascii"


class Parity(str, Enum):
    NONE = "N"
    EVEN = "E"
    ODD = "O"


MEASUREMENTS = ("temperature", "humidity", "pressure")


class RegisterConfig(BaseModel):
    """Where one measurement lives on the device and how to scale it."""
    model_config = ConfigDict(frozen=True)

    register_type: RegisterKind = RegisterKind.HOLDING
    address: int = Field(..., ge=0, le=0xFFFF)
    data_type: DataType = DataType.INT16
    scale: float = 1.0
    byte_order: ByteOrder = ByteOrder.ABCD

    @property
    def word_count(self) -> int:
        return self.data_type.word_count


class SensorDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    sensor_id: str = Field(..., min_length=1)
    sensor_name: str = ""
    connection: str
    slave_id: int = Field(1, ge=0, le=247)
    poll_interval_ms: Optional[int] = Field(None, gt=0)
    combined_read: bool = False
    temperature: Optional[RegisterConfig] = None
    humidity: Optional[RegisterConfig] = None
    pressure: Optional[RegisterConfig] = None

    @property
    def display_name(self) -> str:
        return self.sensor_name or self.sensor_id

    def registers(self) -> Dict[str, RegisterConfig]:
        """Configured measurements only, in temperature/humidity/pressure order."""
        configured = {}
        for name in MEASUREMENTS:
            register = getattr(self, name)
            if register is not None:
                configured[name] = register
        return configured


class ConnectionDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    port: str
    baud_rate: Optional[int] = None
    data_bits: Optional[int] = None
    stop_bits: Optional[int] = None
    parity: Optional[Parity] = None
    framing: Optional[Framing] = None


class LineSettings(BaseModel):
    """Fully resolved line parameters for one physical port."""
    model_config = ConfigDict(frozen=True)

    port: str
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: Parity = Parity.NONE
    framing: Framing = Framing.RTU


def group_by_connection(sensors: List[SensorDefinition]) -> Dict[str, List[SensorDefinition]]:
    grouped: Dict[str, List[SensorDefinition]] = {}
    for sensor in sensors:
        grouped.setdefault(sensor.connection, []).append(sensor)
    return grouped
