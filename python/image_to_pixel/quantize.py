"""色量子化とパレット抽出

パレット構築は Pillow のメディアンカット（既定）か、OpenCV の K-means（LAB空間）。
どちらかが失敗しても例外にはせず、チャンネルごとの一様量子化にフォールバックする。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np
from PIL import Image

from .cleanup import finalize_pixels
from .config import QuantizeMethod
from .imaging import hex_to_rgba, rgba_to_hex
from .models import PaletteEntry, RasterImage

logger = logging.getLogger(__name__)

# 最近傍探索を一度に行うピクセル数
_CHUNK = 16384


@dataclass
class QuantizeResult:
    image: RasterImage
    palette: List[PaletteEntry]
    colors_used: int
    fallback: bool = False


# ---------------------------------------------------------------------------
# パレット構築
# ---------------------------------------------------------------------------


def _median_cut_palette(rgb: np.ndarray, max_colors: int) -> np.ndarray:
    """Pillow の MEDIANCUT でパレットを作る"""
    pil_img = Image.fromarray(np.ascontiguousarray(rgb.reshape(1, -1, 3)))
    quantized = pil_img.quantize(colors=max_colors, method=Image.Quantize.MEDIANCUT)
    raw = np.array(quantized.getpalette()[: 3 * 256], dtype=np.uint8).reshape(-1, 3)
    used = np.unique(np.array(quantized))
    return raw[used]


def _kmeans_palette(rgb: np.ndarray, max_colors: int) -> np.ndarray:
    """
    LAB空間でK-means、各クラスタの代表色は元画像に存在する最頻色にする
    （新しい色を生成しない）
    """
    unique_count = len(np.unique(rgb, axis=0))
    k = min(max_colors, unique_count)
    if k <= 1:
        return np.unique(rgb, axis=0)

    lab = cv2.cvtColor(rgb.reshape(1, -1, 3), cv2.COLOR_RGB2LAB).reshape(-1, 3).astype(np.float32)
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 100, 0.2)
    _, labels, _ = cv2.kmeans(lab, k, None, criteria, 3, cv2.KMEANS_PP_CENTERS)
    labels_flat = labels.flatten()

    representatives = []
    for cluster_id in range(k):
        members = rgb[labels_flat == cluster_id]
        if len(members) == 0:
            continue
        unique, counts = np.unique(members, axis=0, return_counts=True)
        representatives.append(unique[np.argmax(counts)])
    return np.array(representatives, dtype=np.uint8)


_PALETTE_BUILDERS = {
    QuantizeMethod.MEDIAN_CUT: _median_cut_palette,
    QuantizeMethod.KMEANS: _kmeans_palette,
}


def _dedupe(colors: np.ndarray) -> np.ndarray:
    """順序を保ったまま重複を除く"""
    if len(colors) == 0:
        return colors.reshape(0, 3)
    _, first = np.unique(colors, axis=0, return_index=True)
    return colors[np.sort(first)]


def map_to_palette(rgb: np.ndarray, palette: np.ndarray) -> np.ndarray:
    """各ピクセルをRGBユークリッド距離で最も近いパレット色に置き換える"""
    flat = rgb.reshape(-1, 3).astype(np.int32)
    pal = palette.astype(np.int32)
    out = np.empty_like(flat)
    for start in range(0, len(flat), _CHUNK):
        chunk = flat[start:start + _CHUNK]
        dist = ((chunk[:, None, :] - pal[None, :, :]) ** 2).sum(axis=2)
        out[start:start + _CHUNK] = pal[np.argmin(dist, axis=1)]
    return out.reshape(rgb.shape).astype(np.uint8)


# ---------------------------------------------------------------------------
# 量子化
# ---------------------------------------------------------------------------


def uniform_quantize(image: RasterImage, max_colors: int) -> RasterImage:
    """チャンネルごとの一様量子化（外部依存なし・決定的）"""
    step = 256 / max(1, max_colors - 1)
    out = image.pixels.copy()
    rgb = out[:, :, :3].astype(np.float64)
    out[:, :, :3] = np.clip(np.floor(rgb / step + 0.5) * step, 0, 255).astype(np.uint8)
    return finalize_pixels(RasterImage(out))


def quantize(
    image: RasterImage,
    max_colors: int,
    fixed_palette: Optional[Sequence[str]] = None,
    method: QuantizeMethod = QuantizeMethod.MEDIAN_CUT,
) -> QuantizeResult:
    """
    画像を max_colors 色以下のパレットに減色

    固定パレットが指定された場合は構築したパレットに追加し、固定色は必ず残す。
    パレットの大きさは max_colors + 固定色数を超えない。

    Args:
        image: 入力画像
        max_colors: 構築するパレットの最大色数
        fixed_palette: '#rrggbb' の固定色リスト
        method: パレット構築方法

    Returns:
        量子化結果（画像・パレット・使用色数・フォールバック有無）
    """
    try:
        pixels = image.pixels
        opaque = pixels[:, :, 3] > 128
        rgb = pixels[:, :, :3][opaque]

        if len(rgb) > 0:
            palette = _dedupe(_PALETTE_BUILDERS[QuantizeMethod(method)](rgb, max_colors))
        else:
            palette = np.empty((0, 3), dtype=np.uint8)

        if fixed_palette:
            fixed = np.array([hex_to_rgba(c)[:3] for c in fixed_palette], dtype=np.uint8)
            palette = _dedupe(np.concatenate([palette, fixed]))

        out = pixels.copy()
        if len(rgb) > 0 and len(palette) > 0:
            out[:, :, :3][opaque] = map_to_palette(rgb, palette)
        result = finalize_pixels(RasterImage(out))

        entries = [PaletteEntry(int(r), int(g), int(b), 255) for r, g, b in palette]
        return QuantizeResult(result, entries, len(entries))
    except Exception:  # クラスタリングの失敗は一様量子化で代替する
        logger.warning("パレット構築に失敗したため一様量子化にフォールバックします", exc_info=True)
        result = uniform_quantize(image, max_colors)
        entries = palette_entries(result)
        return QuantizeResult(result, entries, len(entries), fallback=True)


# ---------------------------------------------------------------------------
# 色数・パレット
# ---------------------------------------------------------------------------


def _pack_rgba(pixels: np.ndarray) -> np.ndarray:
    flat = pixels.reshape(-1, 4).astype(np.uint32)
    return (flat[:, 0] << 24) | (flat[:, 1] << 16) | (flat[:, 2] << 8) | flat[:, 3]


def count_colors(image: RasterImage, limit: int = 256) -> int:
    """不透明ピクセル（alpha > 128）の固有RGB色数（limit+1 で打ち切り）"""
    pixels = image.pixels
    rgb = pixels[:, :, :3][pixels[:, :, 3] > 128].astype(np.uint32)
    if len(rgb) == 0:
        return 0
    packed = (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
    return min(len(np.unique(packed)), limit + 1)


def palette_from_image(image: RasterImage) -> List[str]:
    """画像に含まれる全RGBA色を '#rrggbbaa' で出現順に返す"""
    packed = _pack_rgba(image.pixels)
    if packed.size == 0:
        return []
    unique, first = np.unique(packed, return_index=True)
    ordered = unique[np.argsort(first)]
    return [
        rgba_to_hex(int(v >> 24) & 0xFF, int(v >> 16) & 0xFF, int(v >> 8) & 0xFF, int(v) & 0xFF)
        for v in ordered
    ]


def palette_entries(image: RasterImage) -> List[PaletteEntry]:
    """不透明ピクセルの固有RGBA色を出現順に返す"""
    pixels = image.pixels
    opaque = pixels[pixels[:, :, 3] > 128]
    if len(opaque) == 0:
        return []
    unique, first = np.unique(_pack_rgba(opaque), return_index=True)
    ordered = opaque[np.sort(first)]
    return [PaletteEntry(int(r), int(g), int(b), int(a)) for r, g, b, a in ordered]


def detect_optimal_color_count(
    image: RasterImage,
    downsample_to: int = 64,
    color_quantize_factor: int = 48,
    dominance_threshold: float = 0.015,
    max_colors: int = 32,
) -> int:
    """
    画像に必要な色数を推定

    縮小とぼかしでグラデーションのノイズを潰し、粗いバケットに分けた色のうち
    画素数の一定割合を占めるものだけを数える。

    Args:
        image: 入力画像
        downsample_to: 解析用に縮小する幅
        color_quantize_factor: 色バケットの粒度
        dominance_threshold: 支配色とみなす画素割合
        max_colors: 結果の上限

    Returns:
        推定色数（2〜max_colors）
    """
    target_w = downsample_to
    target_h = max(1, int(np.floor(target_w * image.height / image.width + 0.5)))
    small = cv2.resize(image.pixels, (target_w, target_h), interpolation=cv2.INTER_AREA)
    small = cv2.medianBlur(small, 5)
    small = cv2.GaussianBlur(small, (5, 5), 1, sigmaY=1)

    total = target_w * target_h
    flat = small.reshape(-1, 4)
    visible = flat[flat[:, 3] >= 200, :3].astype(np.float64)

    if len(visible) > 0:
        buckets = np.floor(visible / color_quantize_factor + 0.5) * color_quantize_factor
        _, counts = np.unique(buckets, axis=0, return_counts=True)
    else:
        counts = np.empty(0, dtype=np.int64)

    min_pixels = max(3, int(np.floor(total * dominance_threshold + 0.5)))
    dominant = counts[counts >= min_pixels]
    significant = len(dominant)

    # 候補が多すぎる場合はより厳しい閾値で数え直す
    if significant > max_colors:
        strict = max(min_pixels, int(np.floor(total * 0.02 + 0.5)))
        significant = int((dominant >= strict).sum())

    return max(2, min(significant, max_colors))
