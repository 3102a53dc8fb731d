from __future__ import annotations

from pathlib import Path

import numpy as np


def perceptual_hash(image: np.ndarray, hash_size: int = 16) -> str:
    """Block-median hash of an image as a hex string.

    The grayscale frame is area-resampled to ``hash_size x hash_size`` blocks;
    each block contributes one bit, set when it is brighter than the median of
    its horizontal band (the image is split into four bands so a bright sky
    does not saturate the whole hash).
    """

    import cv2

    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    blocks = cv2.resize(image, (hash_size, hash_size), interpolation=cv2.INTER_AREA).astype(np.float64)

    bits = np.zeros_like(blocks, dtype=bool)
    for band in np.array_split(np.arange(hash_size), 4):
        if band.size == 0:
            continue
        rows = blocks[band]
        bits[band] = rows > np.median(rows)

    return _bits_to_hex(bits.flatten())


def hash_image_file(image_path: str | Path, hash_size: int = 16) -> str:
    import cv2

    image = cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise ValueError(f"Unable to read extracted frame: {image_path}")
    return perceptual_hash(image, hash_size=hash_size)


def hamming_distance(first: str, second: str) -> int:
    """Count positions at which two equal-length hash strings differ."""

    if len(first) != len(second):
        raise ValueError(f"Hash lengths differ: {len(first)} != {len(second)}")
    return sum(1 for left, right in zip(first, second) if left != right)


def _bits_to_hex(bits: np.ndarray) -> str:
    width = (bits.size + 3) // 4
    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return f"{value:0{width}x}"
