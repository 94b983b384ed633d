"""グリッド整列（縮小ブロックの境界を元画像のドット境界に合わせる）"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .imaging import gradient_profile, to_gray
from .models import GridOffset, RasterImage

logger = logging.getLogger(__name__)


def _best_offset(profile: np.ndarray, scale: int) -> int:
    """
    位相ごとのエッジ強度が最大となるオフセット

    3x3 Sobel の応答は段差の両側の列に出るので、候補境界 i ごとに
    profile[i-1] + profile[i] を足し合わせて評価する。
    """
    padded = np.concatenate([[0.0], profile.astype(np.float64)])
    boundary = padded[:-1] + padded[1:]

    best_offset, best_score = 0, -1.0
    for offset in range(scale):
        score = float(boundary[offset::scale].sum())
        if score > best_score:
            best_score = score
            best_offset = offset
    return best_offset


def find_optimal_crop(image: RasterImage, scale: int) -> GridOffset:
    """
    各軸独立に最適なクロップ原点を求める

    Args:
        image: 入力画像
        scale: 論理ピクセルのサイズ

    Returns:
        クロップ原点（各軸 0 <= v < scale）
    """
    gray = to_gray(image)
    dx = _best_offset(gradient_profile(gray, "horizontal"), scale)
    dy = _best_offset(gradient_profile(gray, "vertical"), scale)
    return GridOffset(dx, dy)


def snap_to_grid(image: RasterImage, scale: int) -> Tuple[RasterImage, Optional[GridOffset]]:
    """
    最適オフセットからスケールの倍数サイズで切り出す

    切り出し結果が1セルより小さくなる場合は整列をスキップし、元画像をそのまま返す。

    Returns:
        (切り出した画像, 適用したオフセット or None)
    """
    offset = find_optimal_crop(image, scale)
    new_w = (image.width - offset.x) // scale * scale
    new_h = (image.height - offset.y) // scale * scale

    if new_w < scale or new_h < scale:
        logger.warning("グリッド整列をスキップします（切り出しサイズ %dx%d が小さすぎる）", new_w, new_h)
        return image, None

    cropped = image.pixels[offset.y:offset.y + new_h, offset.x:offset.x + new_w].copy()
    logger.info("グリッド整列: offset=(%d, %d) size=%dx%d", offset.x, offset.y, new_w, new_h)
    return RasterImage(cropped), offset
