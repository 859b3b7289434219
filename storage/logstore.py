"""
Wrangler Log Store
==================
Durable ordered key-value store backed by an append-only log.

Every write (put, delete or a whole batch) becomes ONE log record:

  [total_len: 4B] [op_count: 4B] [ops...] [crc32: 4B]

  op := [type: 1B] [key_len: 4B] [key] ( [value_len: 4B] [value] )   PUT
        [type: 1B] [key_len: 4B] [key]                              DELETE

The file starts with a 6-byte header (magic + format version).
The record is written and fsynced BEFORE it is applied in memory, so a
batch is durable on return. On open the log is replayed into a sorted
in-memory map. A torn or CRC-invalid tail record (crash mid-append) is
truncated away: the batch it carried is either fully applied or absent.

compact() rewrites only live data to a temp file and atomically renames
it over the log (os.replace).
"""

import logging
import os
import struct
import zlib
from typing import BinaryIO, Iterable, Iterator, List, Optional, Tuple

from storage.kvstore import BatchOp, OpType, StoreIOError
from storage.memory import MemoryStore, _check_op

logger = logging.getLogger(__name__)

# ─── Constants ──────────────────────────────────────────────────────────────

LOG_MAGIC = b"WLOG"
LOG_FORMAT_VERSION = 1
_FILE_HDR = LOG_MAGIC + struct.pack(">H", LOG_FORMAT_VERSION)
_FILE_HDR_SIZE = len(_FILE_HDR)          # 6

_REC_HDR_FMT = ">II"                      # total_len, op_count
_REC_HDR_SIZE = struct.calcsize(_REC_HDR_FMT)
_CRC_SIZE = 4
_MIN_RECORD = _REC_HDR_SIZE + _CRC_SIZE

_OP_PUT = 0x01
_OP_DELETE = 0x02


# ─── Record codec ───────────────────────────────────────────────────────────

def encode_record(ops: List[BatchOp]) -> bytes:
    """Serialize a list of ops into one checksummed log record."""
    body = bytearray()
    for op in ops:
        if op.type == OpType.PUT:
            body.append(_OP_PUT)
            body.extend(struct.pack(">I", len(op.key)))
            body.extend(op.key)
            body.extend(struct.pack(">I", len(op.value)))
            body.extend(op.value)
        else:
            body.append(_OP_DELETE)
            body.extend(struct.pack(">I", len(op.key)))
            body.extend(op.key)

    total_len = _REC_HDR_SIZE + len(body) + _CRC_SIZE
    hdr = struct.pack(_REC_HDR_FMT, total_len, len(ops))
    crc = zlib.crc32(body, zlib.crc32(hdr)) & 0xFFFFFFFF
    return hdr + bytes(body) + struct.pack(">I", crc)


def decode_record(data: bytes, offset: int) -> Tuple[List[BatchOp], int]:
    """
    Decode the record at offset. Returns (ops, next_offset).
    Raises ValueError if the record is truncated or fails its CRC.
    """
    if offset + _MIN_RECORD > len(data):
        raise ValueError(f"Truncated record header at offset {offset}")
    total_len, op_count = struct.unpack_from(_REC_HDR_FMT, data, offset)
    if total_len < _MIN_RECORD or offset + total_len > len(data):
        raise ValueError(f"Truncated record at offset {offset}")

    body_start = offset + _REC_HDR_SIZE
    body_end = offset + total_len - _CRC_SIZE
    stored_crc = struct.unpack_from(">I", data, body_end)[0]
    computed = zlib.crc32(data[body_start:body_end],
                          zlib.crc32(data[offset:body_start])) & 0xFFFFFFFF
    if computed != stored_crc:
        raise ValueError(f"CRC mismatch at offset {offset}")

    ops: List[BatchOp] = []
    pos = body_start
    for _ in range(op_count):
        op_type = data[pos]; pos += 1
        klen = struct.unpack_from(">I", data, pos)[0]; pos += 4
        key = bytes(data[pos:pos + klen]); pos += klen
        if op_type == _OP_PUT:
            vlen = struct.unpack_from(">I", data, pos)[0]; pos += 4
            value = bytes(data[pos:pos + vlen]); pos += vlen
            ops.append(BatchOp(OpType.PUT, key, value))
        elif op_type == _OP_DELETE:
            ops.append(BatchOp(OpType.DELETE, key))
        else:
            raise ValueError(f"Unknown op type 0x{op_type:02X} at offset {pos - 1}")
    if pos != body_end:
        raise ValueError(f"Record length mismatch at offset {offset}")
    return ops, offset + total_len


# ─── LogStore ───────────────────────────────────────────────────────────────

class LogStore(MemoryStore):
    """
    MemoryStore made durable by an append-only log.

    Usage:
        store = LogStore("data/wrangler.log")
        store.batch([BatchOp(OpType.PUT, b"k", b"v")])
        store.close()
    """

    def __init__(self, path: str, sync: bool = True):
        super().__init__()
        self._path = os.path.abspath(path)
        self._sync = sync
        self._file: Optional[BinaryIO] = None
        self._replayed_records = 0
        self._truncated_bytes = 0
        self._open()

    @property
    def path(self) -> str:
        return self._path

    # ─── Open / replay ───────────────────────────────────────────────────

    def _open(self) -> None:
        try:
            parent = os.path.dirname(self._path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            if not os.path.exists(self._path) or os.path.getsize(self._path) == 0:
                with open(self._path, "wb") as f:
                    f.write(_FILE_HDR)
                    f.flush()
                    os.fsync(f.fileno())

            with open(self._path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise StoreIOError(f"Cannot open log {self._path}: {e}") from e

        if data[:_FILE_HDR_SIZE] != _FILE_HDR:
            raise StoreIOError(f"Not a Wrangler log (bad magic): {self._path}")

        end = self._replay(data)
        try:
            self._file = open(self._path, "r+b")
            if end < len(data):
                self._truncated_bytes = len(data) - end
                logger.warning("Truncating %d bytes of torn log tail in %s",
                               self._truncated_bytes, self._path)
                self._file.truncate(end)
                self._fsync()
            self._file.seek(end)
        except OSError as e:
            raise StoreIOError(f"Cannot open log {self._path}: {e}") from e

        logger.debug("Opened %s: %d records replayed, %d keys",
                     self._path, self._replayed_records, len(self._keys))

    def _replay(self, data: bytes) -> int:
        """Apply every intact record. Returns the offset of the valid end."""
        pos = _FILE_HDR_SIZE
        while pos < len(data):
            try:
                ops, next_pos = decode_record(data, pos)
            except (ValueError, struct.error) as e:
                logger.warning("Log replay stopped at offset %d: %s", pos, e)
                break
            self._apply_ops(ops)
            self._replayed_records += 1
            pos = next_pos
        return pos

    # ─── Writes (log first, then apply) ──────────────────────────────────

    def put(self, key: bytes, value: bytes) -> None:
        self.batch([BatchOp(OpType.PUT, key, value)])

    def delete(self, key: bytes) -> None:
        self.batch([BatchOp(OpType.DELETE, key)])

    def batch(self, ops: Iterable[BatchOp]) -> None:
        ops = list(ops)
        if not ops:
            return
        for op in ops:
            _check_op(op)
        record = encode_record(ops)
        with self._lock:
            self._ensure_open()
            self._stats["batches"] += 1
            self._append(record)
            self._apply_ops(ops)

    def _append(self, record: bytes) -> None:
        """Write and (optionally) fsync one record. Must hold _lock."""
        start = self._file.tell()
        try:
            self._file.write(record)
            self._file.flush()
            if self._sync:
                os.fsync(self._file.fileno())
        except OSError as e:
            # Drop the partial record so the log stays replayable
            try:
                self._file.truncate(start)
                self._file.seek(start)
            except OSError:
                logger.exception("Could not roll back partial append in %s",
                                 self._path)
            raise StoreIOError(f"Log append failed: {e}") from e

    def _fsync(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())

    # ─── Maintenance ─────────────────────────────────────────────────────

    def compact(self) -> int:
        """
        Rewrite the log so it holds exactly the live key set.
        Returns the new file size in bytes.
        """
        with self._lock:
            self._ensure_open()
            live = [BatchOp(OpType.PUT, k, self._data[k]) for k in self._keys]
            tmp_path = self._path + ".tmp"
            try:
                with open(tmp_path, "wb") as f:
                    f.write(_FILE_HDR)
                    if live:
                        f.write(encode_record(live))
                    f.flush()
                    os.fsync(f.fileno())
                self._file.close()
                os.replace(tmp_path, self._path)
                self._file = open(self._path, "r+b")
                size = self._file.seek(0, os.SEEK_END)
            except OSError as e:
                raise StoreIOError(f"Compaction failed for {self._path}: {e}") from e
            logger.info("Compacted %s to %d bytes (%d keys)",
                        self._path, size, len(live))
            return size

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                try:
                    self._fsync()
                    self._file.close()
                except OSError as e:
                    raise StoreIOError(f"Close failed for {self._path}: {e}") from e
                finally:
                    self._file = None
            super().close()

    def stats(self) -> dict:
        result = super().stats()
        result["replayed_records"] = self._replayed_records
        result["truncated_bytes"] = self._truncated_bytes
        return result

    def scan_log(self) -> Iterator[List[BatchOp]]:
        """Yield the op list of every record currently in the log file."""
        with self._lock:
            self._ensure_open()
            self._file.flush()
            with open(self._path, "rb") as f:
                data = f.read()
        pos = _FILE_HDR_SIZE
        while pos < len(data):
            ops, pos = decode_record(data, pos)
            yield ops

    def __repr__(self) -> str:
        return f"LogStore(path='{self._path}', keys={len(self._keys)})"
