"""ドット絵再構成パイプライン（オーケストレータ）

アルファ二値化 → スケール検出 → 最大グリッドサイズの強制 → グリッド整列 →
モルフォロジー → 事前量子化 → 縮小 → 事後量子化 → ジャギー除去 → 最終化 → PNG
の順に処理する。設定は読み取り専用で、どのステップも書き換えない。
"""
from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from .cleanup import alpha_binarization, finalize_pixels, jaggy_cleaner, morphological_cleanup
from .config import DownscaleMethod, PixelateConfig, VectorizeConfig
from .content_adaptive import content_adaptive_downscale
from .downscale import downscale
from .errors import EmptyResultError, InputTooLargeError
from .grid import snap_to_grid
from .imaging import decode_image, encode_png, ensure_linalg
from .models import (
    AlphaProcessingInfo,
    CleanupInfo,
    ColorQuantizationInfo,
    DownscalingInfo,
    GridSnappingInfo,
    ProcessingManifest,
    ProcessingSteps,
    ProcessResult,
    RasterImage,
    ScaleDetectionInfo,
    VectorizeResult,
)
from .quantize import count_colors, detect_optimal_color_count, palette_from_image, quantize
from .scale import ScaleDetection, detect_scale
from .vectorize import vectorize

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 50 * 1024 * 1024
MAX_SIDE = 8000
MAX_PIXELS = 10_000_000
AUTO_COLOR_CAP = 32

ImageSource = Union[bytes, str, Path]


def _read_source(source: ImageSource) -> bytes:
    if isinstance(source, (str, Path)):
        path = Path(source)
        size = path.stat().st_size
        if size > MAX_FILE_BYTES:
            raise InputTooLargeError(f"ファイルが大きすぎます: {size} bytes")
        return path.read_bytes()
    return bytes(source)


def load_image(source: ImageSource) -> RasterImage:
    """入力の上限チェックをしてからデコード"""
    data = _read_source(source)
    if len(data) > MAX_FILE_BYTES:
        raise InputTooLargeError(f"ファイルが大きすぎます: {len(data)} bytes")
    return decode_image(data, max_side=MAX_SIDE, max_pixels=MAX_PIXELS)


class _StepTimer:
    """ステップごとの処理時間を記録"""

    def __init__(self) -> None:
        self.timings: Dict[str, float] = {}
        self._start = time.time()

    def lap(self, name: str) -> None:
        now = time.time()
        self.timings[name] = round((now - self._start) * 1000, 2)
        logger.debug("%s: %.2fms", name, self.timings[name])
        self._start = now


def enforce_max_grid_size(width: int, height: int, scale: int, max_grid_size: int) -> int:
    """出力の長辺が max_grid_size を超える場合はスケールを引き上げる（0 は無効）"""
    if not max_grid_size or max_grid_size <= 0:
        return scale
    projected = max(width // scale, height // scale)
    if projected <= max_grid_size:
        return scale
    forced = max(math.ceil(width / max_grid_size), math.ceil(height / max_grid_size))
    logger.info(
        "出力サイズ %dx%d が maxGridSize %d を超えるため scale を %d → %d に変更します",
        width // scale, height // scale, max_grid_size, scale, forced,
    )
    return forced


def process_image(source: ImageSource, config: Optional[PixelateConfig] = None) -> ProcessResult:
    """
    画像をドット絵に再構成

    Args:
        source: エンコード済み画像のバイト列、またはファイルパス
        config: パイプライン設定

    Returns:
        PNGバイト列・最終画像・パレット（#rrggbbaa）・マニフェスト
    """
    config = config or PixelateConfig()
    t0 = time.time()
    timer = _StepTimer()

    if config.downscale_method == DownscaleMethod.CONTENT_ADAPTIVE:
        ensure_linalg()

    current = load_image(source)
    original_size = current.size
    timer.lap("decode")

    # 1. アルファ二値化
    if config.alpha_threshold is not None:
        current = alpha_binarization(current, config.alpha_threshold)
        timer.lap("alpha_binarization")

    # 2. スケール検出
    if config.manual_scale:
        detection = ScaleDetection(max(1, config.manual_scale), "manual")
    else:
        detection = detect_scale(current, config.detect_method, config.edge_detect_method)
    timer.lap("scale_detection")

    scale = enforce_max_grid_size(current.width, current.height, detection.scale, config.max_grid_size)
    if scale <= 1:
        logger.info("scale=1 のため縮小とグリッド整列をスキップします")

    # 3. グリッド整列
    offset = None
    if config.snap_grid and scale > 1:
        current, offset = snap_to_grid(current, scale)
        timer.lap("grid_snapping")

    # 4. モルフォロジーによる前処理
    if config.cleanup.morph:
        current = morphological_cleanup(current)
        timer.lap("morphological_cleanup")

    # 5. 事前量子化
    initial_colors = count_colors(current)
    colors_used = initial_colors
    fallback = False
    effective_max_colors = config.max_colors

    if config.auto_color_count and initial_colors > 2:
        effective_max_colors = detect_optimal_color_count(
            current, max_colors=min(config.max_colors, AUTO_COLOR_CAP)
        )
        logger.info("自動色数検出: %d色", effective_max_colors)

    is_adaptive = config.downscale_method == DownscaleMethod.CONTENT_ADAPTIVE
    if not is_adaptive and effective_max_colors < 256 and initial_colors > effective_max_colors:
        result = quantize(current, effective_max_colors, config.fixed_palette, config.quantize_method)
        current, colors_used, fallback = result.image, result.colors_used, result.fallback
        timer.lap("pre_quantization")

    # 6. 縮小
    quantize_after = False
    if scale > 1:
        if is_adaptive:
            current = content_adaptive_downscale(
                current, current.width // scale, current.height // scale
            )
        else:
            current = downscale(current, scale, config.downscale_method, config.dom_mean_threshold)
        if current.width == 0 or current.height == 0:
            raise EmptyResultError(f"処理結果が空の画像になりました（scale={scale}）")
        quantize_after = config.downscale_method != DownscaleMethod.DOMINANT
        current = finalize_pixels(current)
        timer.lap("downscale")

    # 7. 事後量子化（縮小でパレットが確定しない方法のみ）
    if quantize_after and effective_max_colors < 256:
        result = quantize(current, effective_max_colors, config.fixed_palette, config.quantize_method)
        current, colors_used = result.image, result.colors_used
        fallback = fallback or result.fallback
        timer.lap("post_quantization")

    # 8. ジャギー除去
    if config.cleanup.jaggy:
        current = jaggy_cleaner(current)
        timer.lap("jaggy_cleanup")

    current = finalize_pixels(current)
    png = encode_png(current)
    palette = palette_from_image(current)
    timer.lap("encode")

    edge_method = None
    if not config.manual_scale and config.detect_method.value in ("edge", "auto"):
        edge_method = config.edge_detect_method.value

    manifest = ProcessingManifest(
        original_size=original_size,
        final_size=current.size,
        processing_steps=ProcessingSteps(
            scale_detection=ScaleDetectionInfo(
                method=config.detect_method.value,
                edge_method=edge_method,
                detected_scale=scale,
                manual_scale=config.manual_scale,
                method_used=detection.method_used,
            ),
            color_quantization=ColorQuantizationInfo(
                max_colors=config.max_colors,
                effective_max_colors=effective_max_colors,
                initial_colors=initial_colors,
                final_colors=colors_used,
                fixed_palette=len(config.fixed_palette) if config.fixed_palette else None,
                fallback=fallback,
            ),
            downscaling=DownscalingInfo(
                method=config.downscale_method.value,
                scale_factor=scale,
                dom_mean_threshold=config.dom_mean_threshold,
                applied=scale > 1,
            ),
            cleanup=CleanupInfo(morphological=config.cleanup.morph, jaggy=config.cleanup.jaggy),
            alpha_processing=AlphaProcessingInfo(
                threshold=config.alpha_threshold,
                binarized=config.alpha_threshold is not None,
            ),
            grid_snapping=GridSnappingInfo(
                enabled=config.snap_grid,
                applied=offset is not None,
                offset=(offset.x, offset.y) if offset is not None else None,
            ),
        ),
        processing_time_ms=round((time.time() - t0) * 1000),
        step_timings_ms=timer.timings,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    logger.info(
        "ドット絵化完了: %dx%d → %dx%d (scale=%d, %d色)",
        original_size[0], original_size[1], current.width, current.height, scale, len(palette),
    )
    return ProcessResult(png=png, image=current, palette=palette, manifest=manifest)


def vectorize_image(source: ImageSource, config: Optional[VectorizeConfig] = None) -> VectorizeResult:
    """画像をSVGに変換（入力チェックとデコードを含む）"""
    return vectorize(load_image(source), config)
