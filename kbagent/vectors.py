from __future__ import annotations

import math
import sys
from array import array
from typing import Iterable, Sequence

import numpy as np


def normalize_embedding_text(text: str) -> str:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    normalized = normalized.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
    return "\n".join(line.rstrip() for line in normalized.split("\n"))


def chunk_embedding_input(*, path: str, heading: str, text: str) -> str:
    # Path and heading framing gives short chunks some topical context.
    return (
        f"path={normalize_embedding_text(path)}\n"
        f"heading={normalize_embedding_text(heading)}\n\n"
        f"{normalize_embedding_text(text)}"
    )


def normalize_vector(values: Iterable[float]) -> list[float]:
    vec = [float(v) for v in values]
    if not vec:
        return vec
    norm = math.sqrt(sum(v * v for v in vec))
    if norm <= 0.0:
        return [0.0 for _ in vec]
    return [v / norm for v in vec]


def blend_vectors(primary: Sequence[float], secondary: Sequence[float], primary_weight: float) -> list[float]:
    if len(primary) != len(secondary):
        raise ValueError(f"Cannot blend vectors of different dimensions: {len(primary)} != {len(secondary)}")
    w = float(primary_weight)
    a = np.asarray(normalize_vector(primary), dtype=np.float32)
    b = np.asarray(normalize_vector(secondary), dtype=np.float32)
    return normalize_vector((a * w + b * (1.0 - w)).tolist())


def pack_vector_f32_le(values: Iterable[float]) -> bytes:
    arr = array("f", [float(v) for v in values])
    if sys.byteorder != "little":
        arr.byteswap()
    return arr.tobytes()


def unpack_vector_f32_le(blob: bytes) -> np.ndarray:
    if len(blob) % 4 != 0:
        raise ValueError("Vector blob byte length must be divisible by 4")
    return np.frombuffer(blob, dtype="<f4")
