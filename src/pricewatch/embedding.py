"""
Image embeddings for visual matching of product thumbnails.

The vector is a 16x16 area-averaged grayscale grid, z-normalized so it
captures layout independent of exposure, then a z-normalized gradient
magnitude grid over the same cells (outlines: two filled blobs overlap a
lot, their edges rarely do), then a weighted mean-colour block so flat or
inverted images still separate.

Behavioural bounds the pipeline relies on:
  - same bytes -> same vector
  - same picture re-encoded -> cosine > 0.95
  - different shape / inverted palette -> cosine < 0.7
"""

import asyncio
from io import BytesIO
from typing import BinaryIO, Optional, Sequence, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, DimensionMismatch
from .utils import raise_if_cancelled

GRID = 16
EMBEDDING_SIZE = 2 * GRID * GRID + 3

# Keeps near-flat images from blowing JPEG noise up into "structure"
MIN_CONTRAST = 0.05
MIN_EDGE_CONTRAST = 0.02

# Weight of the mean-colour block relative to the grids (each grid has norm GRID)
COLOR_WEIGHT = 4.0

LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)

ImageInput = Union[bytes, bytearray, memoryview, BinaryIO]


def _open(data: ImageInput) -> Image.Image:
    buf = BytesIO(bytes(data)) if isinstance(data, (bytes, bytearray, memoryview)) else data
    try:
        img = Image.open(buf)
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"cannot decode image: {e}") from e
    return img


def _to_rgb(img: Image.Image) -> Image.Image:
    """Flatten transparency onto white, then drop to plain RGB."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        return Image.alpha_composite(background, rgba).convert("RGB")
    return img.convert("RGB")


def _znorm(values: np.ndarray, floor: float) -> np.ndarray:
    return (values - values.mean()) / max(float(values.std()), floor)


def embed_image(data: ImageInput) -> np.ndarray:
    """Synchronous embedding. Raises DecodeError on unreadable data."""
    rgb = _to_rgb(_open(data)).resize((GRID, GRID), Image.Resampling.BOX)
    pixels = np.asarray(rgb, dtype=np.float32) / 255.0

    gray = pixels @ LUMA
    grid = _znorm(gray.ravel(), MIN_CONTRAST)

    dy, dx = np.gradient(gray)
    edges = _znorm(np.hypot(dx, dy).ravel(), MIN_EDGE_CONTRAST)

    color = (pixels.reshape(-1, 3).mean(axis=0) - 0.5) * 2.0 * COLOR_WEIGHT
    return np.concatenate([grid, edges, color]).astype(np.float32)


async def compute_embedding(data: ImageInput, cancel: Optional[asyncio.Event] = None) -> np.ndarray:
    raise_if_cancelled(cancel)
    return await asyncio.to_thread(embed_image, data)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]. Zero vectors compare as 0.0."""
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        raise DimensionMismatch(f"embedding sizes differ: {va.size} vs {vb.size}")

    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom <= 1e-9:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def preprocess_image(data: ImageInput, max_side: int = 1024, quality: int = 90) -> bytes:
    """
    Normalize an uploaded image to JPEG bytes.

    Accepts anything Pillow decodes (PNG, JPEG, GIF, WEBP...), flattens
    transparency, and bounds the longest side to `max_side`.
    """
    rgb = _to_rgb(_open(data))
    if max(rgb.size) > max_side:
        rgb.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
    out = BytesIO()
    rgb.save(out, format="JPEG", quality=quality)
    return out.getvalue()
