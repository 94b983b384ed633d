"""テスト用の合成画像ヘルパー"""
from __future__ import annotations

import io
import sys
from pathlib import Path

# python ディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import numpy as np
import pytest
from PIL import Image

RED = (255, 0, 0)
BLUE = (0, 0, 255)


def make_checker(blocks: int = 8, size: int = 4, c1=RED, c2=BLUE) -> np.ndarray:
    """size x size のブロックを交互に並べた RGBA 配列"""
    pixels = np.zeros((blocks * size, blocks * size, 4), dtype=np.uint8)
    for by in range(blocks):
        for bx in range(blocks):
            color = c1 if (bx + by) % 2 == 0 else c2
            pixels[by * size:(by + 1) * size, bx * size:(bx + 1) * size] = (*color, 255)
    return pixels


def to_png_bytes(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels)).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def checker_pixels() -> np.ndarray:
    return make_checker()


@pytest.fixture
def checker_png(checker_pixels) -> bytes:
    return to_png_bytes(checker_pixels)
