from __future__ import annotations

import importlib.util
import sys
from pathlib import Path


def repo_root() -> Path:
    """Return the repository root, where the flat modules live."""

    return Path(__file__).resolve().parents[1]


def _ensure_repo_on_path() -> None:
    if importlib.util.find_spec("pod_decode") is None:
        sys.path.insert(0, str(repo_root()))


_ensure_repo_on_path()


def put(buf: bytearray, offset: int, value: int, size: int) -> None:
    """Write a big-endian integer into ``buf``."""
    buf[offset : offset + size] = value.to_bytes(size, "big", signed=value < 0)


def put_text(buf: bytearray, offset: int, text: bytes) -> None:
    buf[offset : offset + len(text)] = text


def cpod_header(filetype: str = "CP1", **fields) -> bytearray:
    size = 360 if filetype == "CP1" else 720
    buf = bytearray(size)
    put_text(buf, 164, fields.get("pod_id", b"1234"))
    put(buf, 256, fields.get("first_logged_min", 60_000_000), 4)
    put(buf, 260, fields.get("last_logged_min", 60_001_000), 4)
    put(buf, 31, fields.get("water_depth", 0), 2)
    put(buf, 29, fields.get("deployment_depth", 0), 2)
    put_text(buf, 13, fields.get("lat", b"55 30.00"))
    put_text(buf, 21, fields.get("lon", b"10 15.00"))
    put_text(buf, 33, fields.get("location", b"Skagerrak"))
    put_text(buf, 211, fields.get("notes", b"test"))
    if filetype == "CP3":
        put(buf, 128, fields.get("prior_clicks", 0), 4)
    return buf


def fpod_header(filetype: str = "FP1", **fields) -> bytearray:
    buf = bytearray(1024)
    pod_id = fields.get("pod_id", 1234)
    buf[3], buf[4] = divmod(pod_id, 100)
    put(buf, 256, fields.get("first_logged_min", 60_000_000), 4)
    put(buf, 260, fields.get("last_logged_min", 60_001_000), 4)
    put(buf, 131, fields.get("water_depth", 0), 2)
    put(buf, 129, fields.get("deployment_depth", 0), 2)
    put_text(buf, 133, fields.get("lat", b"55 30.000N"))
    put_text(buf, 145, fields.get("lon", b"10 15.000E"))
    put_text(buf, 157, fields.get("location", b"Skagerrak"))
    put_text(buf, 188, fields.get("notes", b"test"))
    buf[37] = fields.get("pic_ver", 30)
    put(buf, 39, fields.get("fpga_ver", 0), 2)
    if filetype == "FP3":
        put(buf, 231, fields.get("prior_clicks", 0), 8)
    # GMT text overlaps the FP3 click count field
    put_text(buf, 232, fields.get("gmt", b""))
    return buf


def cpod_click(filetype: str = "CP1", ticks: int = 0, ncyc: int = 0, khz: int = 0,
               species_byte: int = 0, train_id: int = 0) -> bytes:
    size = 10 if filetype == "CP1" else 40
    buf = bytearray(size)
    put(buf, 0, ticks, 3)
    buf[3] = ncyc
    buf[5] = khz
    if filetype == "CP3":
        buf[36] = species_byte
        buf[39] = train_id
    return bytes(buf)


def cpod_minute(filetype: str = "CP1") -> bytes:
    size = 10 if filetype == "CP1" else 40
    buf = bytearray(size)
    buf[-1] = 254
    return bytes(buf)


def cpod_terminator(filetype: str = "CP1") -> bytes:
    size = 10 if filetype == "CP1" else 40
    return b"\xff" * size


def fpod_click(ticks: int = 0, ncyc: int = 0, b4: int = 0, ipi_pre: int = 0,
               ipi_at: int = 0, amp: int = 0, b13: int = 0, b14: int = 0) -> bytes:
    buf = bytearray(16)
    put(buf, 0, ticks, 3)
    buf[3] = ncyc
    buf[4] = b4
    buf[5] = ipi_pre
    buf[6] = ipi_at
    buf[10] = amp
    buf[13] = b13
    buf[14] = b14
    return bytes(buf)


def fpod_train(train_id: int = 0, info: int = 0) -> bytes:
    buf = bytearray(16)
    buf[0] = 249
    buf[14] = info
    buf[15] = train_id
    return bytes(buf)


def fpod_wav(samples: list[tuple[int, int]]) -> bytes:
    """Wave block whose 7 extracted (IPI, SPL) pairs equal ``samples``."""
    buf = bytearray(16)
    buf[0] = 250
    for k, (ipi, spl) in enumerate(samples):
        pos = 12 - 2 * k
        buf[pos + 1] = ipi
        buf[pos + 2] = spl
    return bytes(buf)


def fpod_minute(temp: int = 0, b11: int = 0, b12: int = 0, b13: int = 0) -> bytes:
    buf = bytearray(16)
    buf[0] = 254
    buf[7] = temp
    buf[11] = b11
    buf[12] = b12
    buf[13] = b13
    return bytes(buf)
