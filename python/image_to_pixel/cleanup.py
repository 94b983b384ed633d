"""ノイズ除去とアルファの正規化"""
from __future__ import annotations

import cv2
import numpy as np

from .models import RasterImage


def alpha_binarization(image: RasterImage, threshold: int = 128) -> RasterImage:
    """アルファを閾値で 0 / 255 に二値化（threshold 以上が不透明）"""
    out = image.pixels.copy()
    out[:, :, 3] = np.where(image.alpha >= threshold, 255, 0).astype(np.uint8)
    return RasterImage(out)


def morphological_cleanup(image: RasterImage) -> RasterImage:
    """
    2x2 カーネルで RGBA 全チャンネルにオープニング→クロージング

    オープニングで孤立ノイズを除去し、クロージングで1ピクセルの隙間を埋める。
    """
    kernel = np.ones((2, 2), dtype=np.uint8)
    opened = cv2.morphologyEx(image.pixels, cv2.MORPH_OPEN, kernel)
    closed = cv2.morphologyEx(opened, cv2.MORPH_CLOSE, kernel)
    return RasterImage(closed)


def jaggy_cleaner(image: RasterImage) -> RasterImage:
    """
    孤立した斜めピクセル（ジャギー）を透明にする

    上下左右に不透明の隣接がなく、斜めの不透明隣接がちょうど1つのピクセルを消す。
    近傍の判定は入力のスナップショットに対して行うので、結果は走査順に依存しない。
    画像の外周ピクセルは対象外。
    """
    h, w = image.height, image.width
    out = image.pixels.copy()
    if h < 3 or w < 3:
        return RasterImage(out)

    opaque = (image.alpha > 128).astype(np.int8)
    center = opaque[1:-1, 1:-1]
    orth = (
        opaque[:-2, 1:-1]   # N
        + opaque[2:, 1:-1]  # S
        + opaque[1:-1, 2:]  # E
        + opaque[1:-1, :-2]  # W
    )
    diag = opaque[:-2, 2:] + opaque[:-2, :-2] + opaque[2:, 2:] + opaque[2:, :-2]

    remove = (center == 1) & (orth == 0) & (diag == 1)
    inner = out[1:-1, 1:-1]
    inner[remove] = 0
    return RasterImage(out)


def finalize_pixels(image: RasterImage) -> RasterImage:
    """
    出力前の最終正規化（その場で書き換える）

    alpha < 128 は完全透明の黒 (0,0,0,0)、それ以外は alpha=255 にする。
    """
    pixels = image.pixels
    transparent = pixels[:, :, 3] < 128
    pixels[transparent] = 0
    pixels[~transparent, 3] = 255
    return image
