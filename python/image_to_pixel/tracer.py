"""量子化済みラスタの輪郭トレース（SVG生成）とSVGの簡易ラスタライズ"""
from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import svgwrite
import vtracer

from .config import TraceOptions
from .imaging import encode_png, hex_to_rgba
from .models import PaletteEntry, RasterImage
from .quantize import map_to_palette, quantize

logger = logging.getLogger(__name__)

# パレット未指定時にトレーサー側で減色する色数
DEFAULT_TRACE_COLORS = 16

_PATH_TAG = re.compile(r"<path\b[^>]*?/>", re.IGNORECASE | re.DOTALL)
_D_ATTR = re.compile(r'\bd="([^"]*)"')
_FILL_RGB = re.compile(r'fill="rgb\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*\)"', re.IGNORECASE)
_FILL_HEX = re.compile(r'fill="(#[0-9a-fA-F]{6})"')
_PATH_TOKEN = re.compile(r"[MLZmlz]|-?\d+(?:\.\d+)?")


# ---------------------------------------------------------------------------
# 輪郭抽出
# ---------------------------------------------------------------------------


def _simplify_ring(points: np.ndarray) -> np.ndarray:
    """閉じた点列から重複点と一直線上の中間点を除く"""
    while len(points) >= 3:
        prev_pts = np.roll(points, 1, axis=0)
        duplicate = np.all(points == prev_pts, axis=1)
        if np.any(duplicate):
            points = points[~duplicate]
            continue
        next_pts = np.roll(points, -1, axis=0)
        cross = (
            (points[:, 0] - prev_pts[:, 0]) * (next_pts[:, 1] - points[:, 1])
            - (points[:, 1] - prev_pts[:, 1]) * (next_pts[:, 0] - points[:, 0])
        )
        collinear = cross == 0
        if not np.any(collinear):
            break
        points = points[~collinear]
    return points


def _contour_to_ring(contour: np.ndarray) -> np.ndarray:
    """2倍拡大したマスク上の輪郭をピクセル境界の座標に戻す"""
    pts = contour.reshape(-1, 2)
    return _simplify_ring((pts + 1) // 2)


def _ring_to_d(ring: np.ndarray) -> str:
    parts = [f"M{ring[0][0]} {ring[0][1]}"]
    parts.extend(f"L{x} {y}" for x, y in ring[1:])
    parts.append("Z")
    return " ".join(parts)


def extract_color_regions(
    mask: np.ndarray,
    min_area: int = 0,
) -> List[Tuple[float, str]]:
    """
    1色分のマスクから連結領域ごとのパス（外周 + 穴）を抽出

    マスクを2倍に拡大してから輪郭を取ることで、輪郭点をピクセルの角に正確に対応させる。

    Args:
        mask: 対象色のマスク（uint8, 0/255）
        min_area: これ未満の面積（ピクセル）の領域は捨てる

    Returns:
        [(面積, パス文字列), ...]
    """
    upscaled = cv2.resize(mask, None, fx=2, fy=2, interpolation=cv2.INTER_NEAREST)
    contours, hierarchy = cv2.findContours(upscaled, cv2.RETR_CCOMP, cv2.CHAIN_APPROX_NONE)
    if hierarchy is None or len(contours) == 0:
        return []
    hierarchy = hierarchy[0]

    regions = []
    for i, contour in enumerate(contours):
        if hierarchy[i][3] != -1:
            continue
        outer = _contour_to_ring(contour)
        if len(outer) < 3:
            continue

        holes = []
        child = hierarchy[i][2]
        while child != -1:
            hole = _contour_to_ring(contours[child])
            if len(hole) >= 3:
                holes.append(hole)
            child = hierarchy[child][0]

        area = abs(cv2.contourArea(outer.astype(np.float32)))
        area -= sum(abs(cv2.contourArea(h.astype(np.float32))) for h in holes)
        if area < min_area:
            continue

        d = " ".join([_ring_to_d(outer)] + [_ring_to_d(h) for h in holes])
        regions.append((area, d))
    return regions


def trace_contours(
    image: RasterImage,
    palette: Optional[Sequence[Tuple[int, int, int]]] = None,
    min_area: int = 0,
    number_of_colors: int = DEFAULT_TRACE_COLORS,
) -> str:
    """
    量子化済み画像を色ごとの閉じたパスに変換

    パレットが渡された場合は各ピクセルをその色に寄せてからトレースする。
    渡されない場合は number_of_colors 色に減色する。

    Returns:
        SVG文字列
    """
    h, w = image.height, image.width
    if palette:
        pal = np.array(palette, dtype=np.uint8).reshape(-1, 3)
        rgb = map_to_palette(image.rgb, pal)
    else:
        reduced = quantize(image, number_of_colors).image
        rgb = reduced.rgb
        pal = np.unique(rgb.reshape(-1, 3), axis=0)

    all_paths = []  # [(面積, 色, パス), ...]
    for color in pal:
        mask = np.all(rgb == color, axis=2).astype(np.uint8) * 255
        if not mask.any():
            continue
        fill = f"rgb({int(color[0])},{int(color[1])},{int(color[2])})"
        for area, d in extract_color_regions(mask, min_area):
            all_paths.append((area, fill, d))

    # 面積の大きい順に描画
    all_paths.sort(key=lambda x: x[0], reverse=True)

    dwg = svgwrite.Drawing(size=(w, h), viewBox=f"0 0 {w} {h}")
    for _, fill, d in all_paths:
        dwg.add(dwg.path(d=d, fill=fill, stroke="none", fill_rule="evenodd"))
    return dwg.tostring()


def trace_vtracer(image: RasterImage, options: TraceOptions) -> str:
    """vtracer でトレースし、塗り色を注入パレットに寄せる"""
    with tempfile.TemporaryDirectory() as tmp_dir:
        input_path = Path(tmp_dir) / "input.png"
        output_path = Path(tmp_dir) / "output.svg"
        input_path.write_bytes(encode_png(image))

        vtracer.convert_image_to_svg_py(
            str(input_path),
            str(output_path),
            colormode="color",
            hierarchical="stacked",
            mode=options.mode,
            filter_speckle=options.filter_speckle,
            color_precision=options.color_precision,
            corner_threshold=options.corner_threshold,
            length_threshold=options.length_threshold,
            splice_threshold=options.splice_threshold,
        )
        svg_str = output_path.read_text()

    if options.palette:
        pal = np.array(options.palette, dtype=np.int32).reshape(-1, 3)

        def _snap(match: re.Match) -> str:
            r, g, b, _ = hex_to_rgba(match.group(1))
            dist = ((pal - np.array([r, g, b])) ** 2).sum(axis=1)
            nr, ng, nb = pal[int(np.argmin(dist))]
            return f'fill="rgb({nr},{ng},{nb})"'

        svg_str = _FILL_HEX.sub(_snap, svg_str)
    return svg_str


def trace(image: RasterImage, options: TraceOptions) -> str:
    """トレースエンジンを選んで実行"""
    if options.engine == "vtracer":
        return trace_vtracer(image, options)
    return trace_contours(
        image,
        palette=options.palette,
        min_area=options.min_area,
        number_of_colors=options.number_of_colors,
    )


# ---------------------------------------------------------------------------
# SVG後処理
# ---------------------------------------------------------------------------


def remove_svg_background(svg: str, color: Tuple[int, int, int]) -> str:
    """指定色で塗られた <path> を取り除く（rgb() / #rrggbb どちらの表記にも対応）"""
    r, g, b = color
    rgb_fill = rf"rgb\(\s*{r}\s*,\s*{g}\s*,\s*{b}\s*\)"
    hex_fill = f"#{r:02x}{g:02x}{b:02x}"
    pattern = re.compile(
        rf'<path[^>]*?fill="(?:{rgb_fill}|{hex_fill})"[^>]*?/>', re.IGNORECASE
    )
    cleaned = pattern.sub("", svg)
    if len(cleaned) < len(svg):
        logger.info("背景色 %s のパスを削除しました", hex_fill)
    else:
        logger.warning("背景色 %s のパスが見つかりません", hex_fill)
    return cleaned


def _parse_fill(tag: str) -> Optional[Tuple[int, int, int]]:
    match = _FILL_RGB.search(tag)
    if match:
        return int(match.group(1)), int(match.group(2)), int(match.group(3))
    match = _FILL_HEX.search(tag)
    if match:
        return hex_to_rgba(match.group(1))[:3]
    return None


def extract_palette_from_svg(svg: str) -> List[PaletteEntry]:
    """パスの塗り色から固有色を出現順に抽出"""
    seen = []
    for tag in _PATH_TAG.findall(svg):
        color = _parse_fill(tag)
        if color is not None and color not in seen:
            seen.append(color)
    return [PaletteEntry(r, g, b, 255) for r, g, b in seen]


def _parse_subpaths(d: str) -> List[np.ndarray]:
    subpaths: List[List[Tuple[float, float]]] = []
    tokens = _PATH_TOKEN.findall(d)
    current: List[Tuple[float, float]] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token in ("M", "m"):
            if current:
                subpaths.append(current)
            current = [(float(tokens[i + 1]), float(tokens[i + 2]))]
            i += 3
        elif token in ("L", "l"):
            current.append((float(tokens[i + 1]), float(tokens[i + 2])))
            i += 3
        elif token in ("Z", "z"):
            if current:
                subpaths.append(current)
            current = []
            i += 1
        else:
            # L の省略形（座標の連続）
            current.append((float(tokens[i]), float(tokens[i + 1])))
            i += 2
    if current:
        subpaths.append(current)
    return [np.array(sp, dtype=np.float64) for sp in subpaths if len(sp) >= 3]


def rasterize_svg(svg: str, width: int, height: int) -> RasterImage:
    """
    多角形パス（M/L/Z のみ）からなるSVGをラスタに戻す

    座標を2倍したキャンバスに塗り、ピクセル中心（奇数座標）をサンプリングする。
    サブパスはXORで合成し evenodd を再現する。
    """
    out = np.zeros((height, width, 4), dtype=np.uint8)
    for tag in _PATH_TAG.findall(svg):
        d_match = _D_ATTR.search(tag)
        color = _parse_fill(tag)
        if d_match is None or color is None:
            continue
        if re.search(r"[CcQqSsTtAaHhVv]", d_match.group(1)):
            raise ValueError("曲線を含むパスはラスタライズできません")

        canvas = np.zeros((2 * height + 1, 2 * width + 1), dtype=np.uint8)
        for ring in _parse_subpaths(d_match.group(1)):
            layer = np.zeros_like(canvas)
            cv2.fillPoly(layer, [np.round(ring * 2).astype(np.int32)], 1)
            canvas ^= layer
        covered = canvas[1::2, 1::2][:height, :width].astype(bool)
        out[covered] = (*color, 255)
    return RasterImage(out)
