"""ドット絵の論理ピクセルサイズ（スケール）の検出

3つの戦略（ラン長・単一領域エッジ・タイル分割エッジ）と、それらを組み合わせた
auto を持つ。どの戦略も例外を投げず、判断できない場合は 1（縮小なし）を返す。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence

import numpy as np

from .config import DetectMethod, EdgeDetectMethod
from .imaging import gradient_profile, to_gray
from .models import RasterImage

logger = logging.getLogger(__name__)

TILE_COUNT = 3
TILE_OVERLAP = 0.25
MIN_TILE_SIZE = 50
MIN_ROI_SIZE = 30
BLANK_TILE_STDDEV = 5.0
LARGE_IMAGE_PIXELS = 8_000_000
MIN_RUNS = 10


@dataclass(frozen=True)
class ScaleDetection:
    scale: int
    method_used: str


# ---------------------------------------------------------------------------
# 統計ヘルパー
# ---------------------------------------------------------------------------


def _round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def _mode(values: Sequence[int]) -> int:
    """最頻値（同数の場合は先にその回数へ到達した値）"""
    if not values:
        return 0
    counts: Dict[int, int] = {}
    best, best_count = values[0], 0
    for v in values:
        counts[v] = counts.get(v, 0) + 1
        if counts[v] > best_count:
            best_count = counts[v]
            best = v
    return int(best)


def scale_from_signal(signal: np.ndarray) -> int:
    """
    勾配プロファイルのピーク間隔から周期を推定

    Args:
        signal: 1次元の勾配プロファイル

    Returns:
        推定スケール（ピークが3つ未満なら 1）
    """
    signal = np.asarray(signal, dtype=np.float64)
    if signal.size < 3:
        return 1

    threshold = signal.mean() + 1.5 * signal.std()

    center = signal[1:-1]
    candidates = np.flatnonzero(
        (center > threshold) & (center > signal[:-2]) & (center > signal[2:])
    ) + 1

    peaks: List[int] = []
    for i in candidates:
        # 近すぎるピークは同じエッジとみなす
        if not peaks or i - peaks[-1] > 2:
            peaks.append(int(i))

    if len(peaks) <= 2:
        return 1

    spacings = np.diff(peaks)
    median_spacing = float(np.median(spacings))
    close = np.abs(spacings - median_spacing) <= 2
    if close.sum() / spacings.size > 0.7:
        return _round_half_up(median_spacing)

    mode_spacing = _mode(spacings.tolist())
    return mode_spacing if mode_spacing > 1 else 1


# ---------------------------------------------------------------------------
# 戦略
# ---------------------------------------------------------------------------


def _run_lengths(pixels: np.ndarray) -> np.ndarray:
    """各行の同一ピクセルの連続長（2以上のみ）"""
    h, w = pixels.shape[:2]
    if w == 0 or h == 0:
        return np.empty(0, dtype=np.int64)
    breaks = np.ones((h, w), dtype=bool)
    breaks[:, 1:] = np.any(pixels[:, 1:] != pixels[:, :-1], axis=2)
    starts = np.flatnonzero(breaks.ravel())
    lengths = np.diff(np.append(starts, h * w))
    return lengths[lengths > 1]


def runs_based_detect(image: RasterImage) -> int:
    """
    行・列ごとの同色ラン長の最大公約数からスケールを推定

    きれいなドット絵ではほぼ確実に当たる。ランが10本未満なら 1。
    """
    pixels = image.pixels
    runs = np.concatenate([
        _run_lengths(pixels),
        _run_lengths(pixels.transpose(1, 0, 2)),
    ])
    if runs.size < MIN_RUNS:
        return 1
    return max(1, int(np.gcd.reduce(runs)))


def _single_region_detect(gray: np.ndarray) -> int:
    h, w = gray.shape[:2]
    x0, y0 = int(w * 0.125), int(h * 0.125)
    roi_w, roi_h = int(w * 0.75), int(h * 0.75)
    if roi_w < 3 or roi_h < 3:
        return 1
    roi = gray[y0:y0 + roi_h, x0:x0 + roi_w]

    h_scale = scale_from_signal(gradient_profile(roi, "horizontal"))
    v_scale = scale_from_signal(gradient_profile(roi, "vertical"))

    # 近い値なら平均、そうでなければ大きい方を採用
    if h_scale > 1 and v_scale > 1 and abs(h_scale - v_scale) <= 2:
        return _round_half_up((h_scale + v_scale) / 2)
    return max(h_scale, v_scale, 1)


def legacy_edge_detect(image: RasterImage) -> int:
    """中央75%の領域1つだけで勾配の周期を見る（高速だが荒い）"""
    return _single_region_detect(to_gray(image))


def edge_aware_detect(image: RasterImage) -> int:
    """
    3x3 タイル（25%オーバーラップ）ごとに勾配の周期を求め、その最頻値を返す

    大きすぎる画像はラン長戦略に切り替え、小さい画像や全タイルが空の場合は
    単一領域の検出にフォールバックする。
    """
    if image.width * image.height > LARGE_IMAGE_PIXELS:
        return runs_based_detect(image)

    gray = to_gray(image)
    rows, cols = gray.shape[:2]
    tile_w, tile_h = cols // TILE_COUNT, rows // TILE_COUNT
    overlap_w, overlap_h = int(tile_w * TILE_OVERLAP), int(tile_h * TILE_OVERLAP)

    if tile_w < MIN_TILE_SIZE or tile_h < MIN_TILE_SIZE:
        return _single_region_detect(gray)

    scales: List[int] = []
    for ty in range(TILE_COUNT):
        for tx in range(TILE_COUNT):
            roi_x = max(0, tx * tile_w - overlap_w)
            roi_y = max(0, ty * tile_h - overlap_h)
            roi_w = min(cols - roi_x, tile_w + 2 * overlap_w)
            roi_h = min(rows - roi_y, tile_h + 2 * overlap_h)
            if roi_w < MIN_ROI_SIZE or roi_h < MIN_ROI_SIZE:
                continue

            tile = gray[roi_y:roi_y + roi_h, roi_x:roi_x + roi_w]
            if float(np.std(tile)) < BLANK_TILE_STDDEV:
                continue

            h_scale = scale_from_signal(gradient_profile(tile, "horizontal"))
            v_scale = scale_from_signal(gradient_profile(tile, "vertical"))
            if h_scale > 1:
                scales.append(h_scale)
            if v_scale > 1:
                scales.append(v_scale)

    if not scales:
        return _single_region_detect(gray)
    return _mode(scales) or 1


# ---------------------------------------------------------------------------
# ディスパッチ
# ---------------------------------------------------------------------------


def _edge_strategy(edge_method: EdgeDetectMethod) -> Callable[[RasterImage], int]:
    if edge_method == EdgeDetectMethod.LEGACY:
        return legacy_edge_detect
    return edge_aware_detect


def _edge_label(image: RasterImage, edge_method: EdgeDetectMethod) -> str:
    if edge_method == EdgeDetectMethod.TILED and image.width * image.height > LARGE_IMAGE_PIXELS:
        return DetectMethod.RUNS.value
    return f"edge:{edge_method.value}"


def _detect_runs(image: RasterImage, edge_method: EdgeDetectMethod) -> ScaleDetection:
    return ScaleDetection(runs_based_detect(image), DetectMethod.RUNS.value)


def _detect_edge(image: RasterImage, edge_method: EdgeDetectMethod) -> ScaleDetection:
    scale = _edge_strategy(edge_method)(image)
    return ScaleDetection(scale, _edge_label(image, edge_method))


def _detect_auto(image: RasterImage, edge_method: EdgeDetectMethod) -> ScaleDetection:
    runs_scale = runs_based_detect(image)
    if runs_scale > 1:
        return ScaleDetection(runs_scale, DetectMethod.RUNS.value)
    return _detect_edge(image, edge_method)


_STRATEGIES: Dict[DetectMethod, Callable[[RasterImage, EdgeDetectMethod], ScaleDetection]] = {
    DetectMethod.RUNS: _detect_runs,
    DetectMethod.EDGE: _detect_edge,
    DetectMethod.AUTO: _detect_auto,
}


def detect_scale(
    image: RasterImage,
    method: DetectMethod = DetectMethod.AUTO,
    edge_method: EdgeDetectMethod = EdgeDetectMethod.TILED,
) -> ScaleDetection:
    """
    指定された戦略でスケールを検出

    Args:
        image: 入力画像
        method: auto / runs / edge
        edge_method: edge 系で使う tiled / legacy

    Returns:
        検出スケールと実際に使われた戦略名
    """
    try:
        result = _STRATEGIES[DetectMethod(method)](image, EdgeDetectMethod(edge_method))
    except Exception:  # 検出の失敗は縮小なしとして扱う
        logger.warning("スケール検出に失敗したため scale=1 にフォールバックします", exc_info=True)
        return ScaleDetection(1, "fallback")

    logger.info("スケール検出: %d (%s)", result.scale, result.method_used)
    return result
