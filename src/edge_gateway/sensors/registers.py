"""
Register decoding.

Turns raw 16-bit Modbus register words into scaled physical values.
Nothing in here touches the bus, so everything is a plain function.
"""
import math
import struct
from typing import Dict, Mapping, Optional, Sequence, Tuple

from ..models.sensor import ByteOrder, DataType, RegisterConfig, RegisterKind
from ..utils.exceptions import DecodeError

# Largest block a single read holding/input registers request may return
MAX_BLOCK_WORDS = 125

_STRUCT_FORMATS = {
    DataType.UINT16: '>H',
    DataType.INT16: '>h',
    DataType.UINT32: '>I',
    DataType.INT32: '>i',
    DataType.FLOAT32: '>f',
    DataType.FLOAT64: '>d',
}


def _words_to_bytes(words: Sequence[int], byte_order: ByteOrder) -> bytes:
    for word in words:
        if not isinstance(word, int) or not 0 <= word <= 0xFFFF:
            raise DecodeError(f"Invalid register word: {word!r}")

    if byte_order in (ByteOrder.CDAB, ByteOrder.DCBA):
        words = list(reversed(words))

    raw = b''.join(struct.pack('>H', word) for word in words)

    if byte_order in (ByteOrder.BADC, ByteOrder.DCBA):
        raw = b''.join(raw[i:i + 2][::-1] for i in range(0, len(raw), 2))
    return raw


def decode_value(words: Sequence[int], data_type: DataType,
                 byte_order: ByteOrder = ByteOrder.ABCD, scale: float = 1.0) -> float:
    """
    Interpret `words` as `data_type` in `byte_order` and multiply by `scale`.

    A scale of 0 is treated as 1, matching devices whose register maps
    leave the factor unset.

    Raises:
        DecodeError: fewer words than the data type needs, a word outside
            0..0xFFFF, or a float that decodes to NaN/inf.
    """
    needed = data_type.word_count
    if len(words) < needed:
        raise DecodeError(f"{data_type.value} needs {needed} registers, got {len(words)}")

    raw = _words_to_bytes(list(words[:needed]), byte_order)
    (value,) = struct.unpack(_STRUCT_FORMATS[data_type], raw)

    if isinstance(value, float) and not math.isfinite(value):
        raise DecodeError(f"Register value is not a finite number: {value}")

    factor = scale if scale else 1.0
    return float(value) * factor


def decode_register(words: Sequence[int], register: RegisterConfig) -> float:
    return decode_value(words, register.data_type, register.byte_order, register.scale)


def slice_block(block_start: int, block: Sequence[int], register: RegisterConfig) -> Sequence[int]:
    """Words belonging to `register` inside a block read starting at `block_start`."""
    offset = register.address - block_start
    end = offset + register.word_count
    if offset < 0 or end > len(block):
        raise DecodeError(
            f"Register {register.address} ({register.word_count} words) outside block "
            f"{block_start}..{block_start + len(block) - 1}"
        )
    return block[offset:end]


def plan_block(registers: Mapping[str, RegisterConfig],
               max_words: int = MAX_BLOCK_WORDS) -> Optional[Tuple[RegisterKind, int, int]]:
    """
    Work out one read covering every register, if there is one.

    Returns (register kind, start address, word count), or None when the
    registers live in different register spaces or span more than
    `max_words`.
    """
    if not registers:
        return None
    kinds = {r.register_type for r in registers.values()}
    if len(kinds) != 1:
        return None
    start = min(r.address for r in registers.values())
    end = max(r.address + r.word_count for r in registers.values())
    count = end - start
    if count > max_words:
        return None
    return kinds.pop(), start, count


def decode_block(block_start: int, block: Sequence[int],
                 registers: Mapping[str, RegisterConfig]) -> Dict[str, Optional[float]]:
    """
    Decode every measurement out of one block read.

    A measurement that cannot be sliced or decoded comes back as None, the
    same outcome an independent read of that register would have had.
    """
    values: Dict[str, Optional[float]] = {}
    for name, register in registers.items():
        try:
            values[name] = decode_register(slice_block(block_start, block, register), register)
        except DecodeError:
            values[name] = None
    return values
