"""
wasm.py — section-level WebAssembly binary codec.

Only the module framing is decoded: header, section ids, sizes, custom-section
names and the element count of vector sections. Section payloads are carried
as opaque bytes, which is all the optimizer's strip/marker passes need and
keeps re-encoding lossless.

Checks performed by `parse_module`:
  • magic `\\0asm` and version 1
  • LEB128 sizes within 5 bytes and within the buffer
  • non-custom sections appear at most once and in canonical order
  • function and code sections declare the same number of entries
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

WASM_MAGIC = b"\x00asm"
WASM_VERSION = b"\x01\x00\x00\x00"

SEC_CUSTOM = 0
SEC_TYPE = 1
SEC_IMPORT = 2
SEC_FUNCTION = 3
SEC_TABLE = 4
SEC_MEMORY = 5
SEC_GLOBAL = 6
SEC_EXPORT = 7
SEC_START = 8
SEC_ELEMENT = 9
SEC_CODE = 10
SEC_DATA = 11
SEC_DATACOUNT = 12
SEC_TAG = 13

# Position of each known section id in a well-formed module.
_ORDER = {
    SEC_TYPE: 1,
    SEC_IMPORT: 2,
    SEC_FUNCTION: 3,
    SEC_TABLE: 4,
    SEC_MEMORY: 5,
    SEC_TAG: 6,
    SEC_GLOBAL: 7,
    SEC_EXPORT: 8,
    SEC_START: 9,
    SEC_ELEMENT: 10,
    SEC_DATACOUNT: 11,
    SEC_CODE: 12,
    SEC_DATA: 13,
}

VECTOR_SECTIONS = frozenset(
    {SEC_TYPE, SEC_IMPORT, SEC_FUNCTION, SEC_TABLE, SEC_MEMORY, SEC_GLOBAL, SEC_EXPORT, SEC_ELEMENT, SEC_CODE, SEC_DATA, SEC_TAG}
)


class WasmFormatError(ValueError):
    """The bytes are not a structurally valid WASM module."""


# ------------------------------ LEB128 -------------------------------------- #


def read_varuint(data: bytes, offset: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise WasmFormatError("unexpected EOF while reading varuint")
        if shift > 28:
            raise WasmFormatError("varuint32 longer than 5 bytes")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << shift
        if byte & 0x80 == 0:
            break
        shift += 7
    return result, offset


def write_varuint(value: int) -> bytes:
    if value < 0:
        raise ValueError("varuint must be non-negative")
    parts: List[int] = []
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            parts.append(byte | 0x80)
        else:
            parts.append(byte)
            break
    return bytes(parts)


def read_name(data: bytes, offset: int) -> Tuple[str, int]:
    length, offset = read_varuint(data, offset)
    end = offset + length
    if end > len(data):
        raise WasmFormatError("unexpected EOF while reading name")
    try:
        return data[offset:end].decode("utf-8"), end
    except UnicodeDecodeError as exc:
        raise WasmFormatError("name is not valid UTF-8") from exc


def write_name(value: str) -> bytes:
    raw = value.encode("utf-8")
    return write_varuint(len(raw)) + raw


# ------------------------------ Model --------------------------------------- #


@dataclass(frozen=True)
class Section:
    id: int
    payload: bytes = field(repr=False)

    @property
    def is_custom(self) -> bool:
        return self.id == SEC_CUSTOM

    @property
    def name(self) -> Optional[str]:
        """Custom-section name, None for standard sections."""
        if not self.is_custom:
            return None
        return read_name(self.payload, 0)[0]

    @property
    def body(self) -> bytes:
        """Payload without the custom-section name prefix."""
        if not self.is_custom:
            return self.payload
        return self.payload[read_name(self.payload, 0)[1]:]

    def count(self) -> Optional[int]:
        """Declared element count of a vector section."""
        if self.id not in VECTOR_SECTIONS:
            return None
        return read_varuint(self.payload, 0)[0]

    def encode(self) -> bytes:
        return bytes([self.id]) + write_varuint(len(self.payload)) + self.payload

    @classmethod
    def custom(cls, name: str, body: bytes) -> "Section":
        return cls(SEC_CUSTOM, write_name(name) + body)


@dataclass(frozen=True)
class WasmModule:
    sections: Tuple[Section, ...]

    def __iter__(self) -> Iterator[Section]:
        return iter(self.sections)

    def to_bytes(self) -> bytes:
        out = bytearray(WASM_MAGIC + WASM_VERSION)
        for sec in self.sections:
            out += sec.encode()
        return bytes(out)

    def custom_sections(self) -> List[Section]:
        return [s for s in self.sections if s.is_custom]

    def section(self, sec_id: int) -> Optional[Section]:
        for s in self.sections:
            if s.id == sec_id:
                return s
        return None

    def filtered(self, keep: Callable[[Section], bool]) -> "WasmModule":
        return WasmModule(tuple(s for s in self.sections if keep(s)))

    def appended(self, sec: Section) -> "WasmModule":
        return WasmModule(self.sections + (sec,))


def parse_module(data: bytes) -> WasmModule:
    """Split `data` into sections, validating framing and section order."""
    data = bytes(data)
    if len(data) < 8 or data[:4] != WASM_MAGIC:
        raise WasmFormatError("missing \\0asm magic")
    if data[4:8] != WASM_VERSION:
        raise WasmFormatError(f"unsupported wasm version {data[4:8].hex()}")

    sections: List[Section] = []
    seen = set()
    last_rank = 0
    offset = 8
    while offset < len(data):
        sec_id = data[offset]
        offset += 1
        size, offset = read_varuint(data, offset)
        end = offset + size
        if end > len(data):
            raise WasmFormatError(f"section {sec_id} overruns the module ({end} > {len(data)})")
        sec = Section(sec_id, data[offset:end])
        offset = end

        if sec_id == SEC_CUSTOM:
            read_name(sec.payload, 0)
        else:
            rank = _ORDER.get(sec_id)
            if rank is None:
                raise WasmFormatError(f"unknown section id {sec_id}")
            if sec_id in seen:
                raise WasmFormatError(f"duplicate section id {sec_id}")
            if rank < last_rank:
                raise WasmFormatError(f"section id {sec_id} out of order")
            seen.add(sec_id)
            last_rank = rank
            if sec_id in VECTOR_SECTIONS and not sec.payload:
                raise WasmFormatError(f"section {sec_id} is empty")
        sections.append(sec)

    module = WasmModule(tuple(sections))
    funcs = module.section(SEC_FUNCTION)
    code = module.section(SEC_CODE)
    n_funcs = funcs.count() if funcs is not None else 0
    n_code = code.count() if code is not None else 0
    if n_funcs != n_code:
        raise WasmFormatError(f"function section declares {n_funcs} entries but code section has {n_code}")
    return module


def looks_like_wasm(data: bytes) -> bool:
    return len(data) >= 8 and data[:4] == WASM_MAGIC


__all__ = [
    "WASM_MAGIC",
    "WASM_VERSION",
    "WasmFormatError",
    "Section",
    "WasmModule",
    "parse_module",
    "looks_like_wasm",
    "read_varuint",
    "write_varuint",
    "read_name",
    "write_name",
]
