import logging
import struct
import zlib
from enum import Enum
from pathlib import Path
from typing import *

logger = logging.getLogger(__name__)

MAGIC = b'PlZ'  # compressed save container magic
HEADER_SIZE = 12  # uncompressed_size(4) + stage1_size(4) + magic(3) + mode(1)
COMPRESSION_LEVEL = zlib.Z_DEFAULT_COMPRESSION
U32_MAX = 0xFFFFFFFF


def _read_u32(data: bytes, offset: int) -> Tuple[int, int]:
    return struct.unpack_from('<I', data, offset)[0], offset + 4


def _write_u32(data: bytearray, v: int) -> None:
    data.extend(struct.pack('<I', v))


class PalSaveError(ValueError):
    pass


class TooShortError(PalSaveError):
    pass


class BadMagicError(PalSaveError):
    pass


class UnsupportedModeError(PalSaveError):
    pass


class LengthMismatchError(PalSaveError):
    pass


class CompressionError(PalSaveError):
    pass


class CompressionMode(Enum):
    """Number of zlib passes applied to the payload, stored as an ASCII digit."""
    SINGLE = b'1'
    DOUBLE = b'2'

    @classmethod
    def from_byte(cls, value: int) -> 'CompressionMode':
        try:
            return cls(bytes([value]))
        except ValueError:
            raise UnsupportedModeError(
                f"Unsupported compression mode {bytes([value])!r}, expected b'1' or b'2'")

    @classmethod
    def parse(cls, value: Union[str, bytes, int, 'CompressionMode']) -> 'CompressionMode':
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            value = str(value)
        if isinstance(value, str):
            value = value.encode('ascii', errors='replace')
        if len(value) != 1:
            raise UnsupportedModeError(
                f"Unsupported compression mode {value!r}, expected '1' or '2'")
        return cls.from_byte(value[0])

    def to_byte(self) -> bytes:
        return self.value

    @property
    def passes(self) -> int:
        return int(self.value)

    def __str__(self):
        return self.value.decode('ascii')


def compress_pass(data: bytes) -> bytes:
    """Apply one zlib compression pass at the fixed default level."""
    try:
        return zlib.compress(data, COMPRESSION_LEVEL)
    except zlib.error as e:
        raise CompressionError(f"zlib compression failed: {e}")


def decompress_pass(data: bytes, max_length: Optional[int] = None) -> bytes:
    """Apply one zlib decompression pass.

    The stream must be complete; a truncated stream is reported as a
    CompressionError rather than returning partial output. With max_length
    set, inflation stops one byte past it and the overrun is reported as a
    LengthMismatchError.
    """
    dobj = zlib.decompressobj()
    try:
        if max_length is None:
            out = dobj.decompress(data)
        else:
            out = dobj.decompress(data, max_length + 1)
            if len(out) > max_length or dobj.unconsumed_tail:
                raise LengthMismatchError(
                    f"Unmatched length: zlib output exceeds {max_length} byte(s) declared in header")
        out += dobj.flush()
    except zlib.error as e:
        raise CompressionError(f"zlib failed: {e}")
    if not dobj.eof:
        raise CompressionError("zlib failed: incomplete or truncated stream")
    return out


class PalSave:
    """
    In-memory form of a compressed save container.

    stage1_size is overloaded by the on-disk format:
    - mode '1': length of the stored body
    - mode '2': length of the body after one decompression pass
    """

    def __init__(self, uncompressed_size: int, stage1_size: int,
                 compression_mode: CompressionMode, body: bytes):
        self._uncompressed_size = uncompressed_size
        self._stage1_size = stage1_size
        self._magic = MAGIC
        self._compression_mode = compression_mode
        self._body = bytes(body)

    @property
    def uncompressed_size(self) -> int:
        return self._uncompressed_size

    @property
    def stage1_size(self) -> int:
        return self._stage1_size

    @property
    def magic(self) -> bytes:
        return self._magic

    @property
    def compression_mode(self) -> CompressionMode:
        return self._compression_mode

    @property
    def body(self) -> bytes:
        return self._body

    @property
    def header(self) -> Dict[str, Any]:
        return {
            "magic": self._magic.decode('ascii'),
            "compression_mode": str(self._compression_mode),
            "uncompressed_size": self._uncompressed_size,
            "stage1_size": self._stage1_size,
            "body_size": len(self._body),
        }

    @classmethod
    def from_bytes(cls, data: bytes) -> 'PalSave':
        if len(data) < HEADER_SIZE:
            raise TooShortError(
                f"Data too short: {len(data)} byte(s), header needs {HEADER_SIZE}")

        offset = 0
        uncompressed_size, offset = _read_u32(data, offset)
        stage1_size, offset = _read_u32(data, offset)

        magic = bytes(data[offset: offset + 3])
        offset += 3
        if magic != MAGIC:
            raise BadMagicError(
                f"Invalid magic bytes {magic!r}, not a compressed save container")

        compression_mode = CompressionMode.from_byte(data[offset])
        offset += 1

        body = bytes(data[offset:])

        # mode 2 records no length for the outer stream; checked on decompression
        if compression_mode is CompressionMode.SINGLE and len(body) != stage1_size:
            raise LengthMismatchError(
                f"Unmatched file length: body is {len(body)} byte(s), header says {stage1_size}")

        logger.debug("parsed container: mode=%s uncompressed=%d stage1=%d body=%d",
                     compression_mode, uncompressed_size, stage1_size, len(body))
        return cls(uncompressed_size, stage1_size, compression_mode, body)

    def to_bytes(self) -> bytes:
        data = bytearray()
        _write_u32(data, self._uncompressed_size)
        _write_u32(data, self._stage1_size)
        data.extend(self._magic)
        data.extend(self._compression_mode.to_byte())
        data.extend(self._body)
        return bytes(data)

    def decompressed_body(self) -> bytes:
        double = self._compression_mode is CompressionMode.DOUBLE
        data = decompress_pass(self._body, self._stage1_size if double else self._uncompressed_size)

        if double:
            if len(data) != self._stage1_size:
                raise LengthMismatchError(
                    f"Unmatched intermediate length: {len(data)} byte(s), header says {self._stage1_size}")
            data = decompress_pass(data, self._uncompressed_size)

        if len(data) != self._uncompressed_size:
            raise LengthMismatchError(
                f"Unmatched payload length: {len(data)} byte(s), header says {self._uncompressed_size}")

        return data

    def update_payload(self, payload: bytes) -> None:
        if len(payload) > U32_MAX:
            raise LengthMismatchError(
                f"Payload of {len(payload)} byte(s) does not fit a u32 size field")

        compressed = compress_pass(payload)
        stage1_size = len(compressed)
        if self._compression_mode is CompressionMode.DOUBLE:
            compressed = compress_pass(compressed)

        self._uncompressed_size = len(payload)
        self._stage1_size = stage1_size
        self._body = compressed
        logger.debug("updated payload: uncompressed=%d stage1=%d body=%d",
                     self._uncompressed_size, self._stage1_size, len(self._body))

    @classmethod
    def from_raw_payload(cls, payload: bytes,
                         compression_mode: Union[str, bytes, CompressionMode] = CompressionMode.DOUBLE) -> 'PalSave':
        save = cls(len(payload), 0, CompressionMode.parse(compression_mode), b'')
        save.update_payload(payload)
        return save

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'PalSave':
        return cls.from_bytes(Path(path).read_bytes())

    @classmethod
    def from_decompressed_file(cls, path: Union[str, Path],
                               compression_mode: Union[str, bytes, CompressionMode] = CompressionMode.DOUBLE) -> 'PalSave':
        return cls.from_raw_payload(Path(path).read_bytes(), compression_mode)

    def to_file(self, path: Union[str, Path]) -> None:
        Path(path).write_bytes(self.to_bytes())

    def __eq__(self, other):
        if not isinstance(other, PalSave):
            return NotImplemented
        return (self._uncompressed_size == other._uncompressed_size
                and self._stage1_size == other._stage1_size
                and self._compression_mode is other._compression_mode
                and self._body == other._body)

    def __repr__(self):
        return (f"PalSave(mode={self._compression_mode}, uncompressed_size={self._uncompressed_size}, "
                f"stage1_size={self._stage1_size}, body=<{len(self._body)} bytes>)")


def read_savefile(path: Path) -> PalSave:
    return PalSave.from_file(path)


def write_savefile(path: Path, save: PalSave) -> None:
    save.to_file(path)
