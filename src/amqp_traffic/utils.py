# utils.py
from __future__ import annotations
import random
import struct
import time
from typing import Optional

# Send timestamp header: big-endian IEEE-754 double.
TIMESTAMP_HEADER = struct.Struct("!d")
TIMESTAMP_HEADER_SIZE = TIMESTAMP_HEADER.size

PAYLOAD_TIMESTAMP = "timestamp"
PAYLOAD_RANDOM = "random"
PAYLOAD_MODES = (PAYLOAD_TIMESTAMP, PAYLOAD_RANDOM)

def now() -> float:
    return time.time()

def rand_int(one_past_max: int, rng: Optional[random.Random] = None) -> int:
    # Uniform in [0, one_past_max)
    if one_past_max <= 0:
        return 0
    return (rng or random).randrange(one_past_max)

def random_bytes(n: int, rng: Optional[random.Random] = None) -> bytes:
    r = rng or random
    return bytes(r.getrandbits(8) for _ in range(n))

def make_timestamped_body(ts: float, length: int) -> bytes:
    # Header followed by 'x' padding up to exactly `length` bytes (never shorter than the header)
    header = TIMESTAMP_HEADER.pack(ts)
    return header + b"x" * max(0, length - TIMESTAMP_HEADER_SIZE)

def make_random_body(ts: float, max_length: int, rng: Optional[random.Random] = None) -> bytes:
    header = TIMESTAMP_HEADER.pack(ts)
    return header + random_bytes(rand_int(max_length, rng), rng)

def make_body(mode: str, ts: float, max_length: int, rng: Optional[random.Random] = None) -> bytes:
    if mode == PAYLOAD_RANDOM:
        return make_random_body(ts, max_length, rng)
    return make_timestamped_body(ts, max_length)

def read_send_timestamp(body) -> float:
    """Return the send timestamp embedded at the head of a message body.

    Raises ValueError when the body is not binary or is shorter than the header.
    """
    if isinstance(body, memoryview):
        body = body.tobytes()
    if not isinstance(body, (bytes, bytearray)):
        raise ValueError(f"expected a binary body, got {type(body).__name__}")
    if len(body) < TIMESTAMP_HEADER_SIZE:
        raise ValueError(f"body too short for timestamp header: {len(body)} bytes")
    (ts,) = TIMESTAMP_HEADER.unpack_from(body, 0)
    return ts
