"""ラスタ → SVG のベクター化パイプライン

前処理・量子化・後処理はそれぞれ失敗しても処理を止めず、直前の画像のまま続行する。
透過画像は一時的にマゼンタ背景を敷いてからフィルタを掛け、トレース後にその色の
パスを取り除く。
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

import cv2
import numpy as np

from .config import PostProcessConfig, PreProcessConfig, VectorizeConfig
from .imaging import rgba_to_hex
from .models import RasterImage, VectorizeManifest, VectorizeResult
from .quantize import detect_optimal_color_count, quantize
from .tracer import extract_palette_from_svg, remove_svg_background, trace

logger = logging.getLogger(__name__)

MAGIC_BACKGROUND = (255, 0, 255)


def has_transparency(image: RasterImage) -> bool:
    return bool(np.any(image.alpha < 255))


def fill_background(image: RasterImage, color=MAGIC_BACKGROUND) -> RasterImage:
    """完全透明のピクセルを背景色で埋め、それ以外は不透明にする"""
    out = image.pixels.copy()
    transparent = out[:, :, 3] == 0
    out[transparent, :3] = color
    out[:, :, 3] = 255
    return RasterImage(out)


def _odd(value: int) -> int:
    return value + 1 if value % 2 == 0 else value


def pre_process_image(image: RasterImage, options: PreProcessConfig) -> RasterImage:
    """
    トレース前のノイズ除去

    bilateral は RGB のみに適用してアルファはそのまま戻す。median はカーネルを奇数に揃える。
    morphology が有効なら最後にクロージングを掛ける。
    """
    src = image.pixels
    if options.filter == "bilateral":
        d = options.value or 15
        rgb = np.ascontiguousarray(src[:, :, :3])
        filtered = cv2.bilateralFilter(rgb, d, d * 2, d / 2)
        dst = np.dstack([filtered, src[:, :, 3]])
    elif options.filter == "median":
        dst = cv2.medianBlur(src, _odd(options.value or 5))
    else:
        return image

    if options.morphology:
        size = options.morphology_kernel or 3
        kernel = np.ones((size, size), dtype=np.uint8)
        dst = cv2.morphologyEx(dst, cv2.MORPH_CLOSE, kernel)
    return RasterImage(np.ascontiguousarray(dst))


def post_process_image(image: RasterImage, options: PostProcessConfig) -> RasterImage:
    """量子化のギザギザを軽くぼかす（カーネルは奇数）"""
    ksize = _odd(options.value or 3)
    if options.filter == "gaussian":
        dst = cv2.GaussianBlur(image.pixels, (ksize, ksize), 0)
    elif options.filter == "median":
        dst = cv2.medianBlur(image.pixels, ksize)
    else:
        return image
    return RasterImage(dst)


def vectorize(image: RasterImage, config: Optional[VectorizeConfig] = None) -> VectorizeResult:
    """
    画像をSVGに変換

    Args:
        image: 入力画像
        config: ベクター化設定

    Returns:
        SVG文字列・マニフェスト・SVGから再抽出したパレット
    """
    config = config or VectorizeConfig()
    start_time = time.time()
    trace_options = config.trace_options
    skipped: List[str] = []

    current = image
    background_added = False
    if has_transparency(current):
        current = fill_background(current)
        background_added = True

    if config.pre_process.enabled:
        try:
            current = pre_process_image(current, config.pre_process)
        except (cv2.error, ValueError) as exc:
            logger.warning("前処理に失敗したため元の画像で続行します: %s", exc)
            skipped.append("pre_process")

    if config.quantize.enabled:
        try:
            num_colors = config.quantize.max_colors
            if num_colors == "auto":
                num_colors = detect_optimal_color_count(current)
            # 背景色は必ずパレットに残し、後で完全一致で消せるようにする
            fixed = [rgba_to_hex(*MAGIC_BACKGROUND)] if background_added else None
            result = quantize(current, int(num_colors), fixed_palette=fixed)
            current = result.image
            if result.palette:
                trace_options = trace_options.model_copy(update={
                    "palette": [(p.r, p.g, p.b) for p in result.palette],
                    "number_of_colors": len(result.palette),
                })
        except (cv2.error, ValueError) as exc:
            logger.warning("量子化に失敗したため直前の画像で続行します: %s", exc)
            skipped.append("quantize")

    if config.post_process.enabled:
        try:
            current = post_process_image(current, config.post_process)
        except (cv2.error, ValueError) as exc:
            logger.warning("後処理に失敗したため量子化後の画像で続行します: %s", exc)
            skipped.append("post_process")

    svg = trace(current, trace_options)

    if background_added:
        svg = remove_svg_background(svg, MAGIC_BACKGROUND)

    palette = extract_palette_from_svg(svg)

    manifest = VectorizeManifest(
        original_size=(image.width, image.height),
        processing_time_ms=round((time.time() - start_time) * 1000),
        timestamp=datetime.now(timezone.utc).isoformat(),
        options=trace_options.model_dump(),
        pre_process=config.pre_process.model_dump(),
        quantize=config.quantize.model_dump(),
        post_process=config.post_process.model_dump(),
        background_removed=background_added,
        skipped_steps=skipped,
    )
    logger.info("ベクター化完了: %d色 (%dms)", len(palette), manifest.processing_time_ms)
    return VectorizeResult(svg=svg, manifest=manifest, palette=palette)
