"""画像の入出力と基本演算（OpenCV / Pillow / numpy のラッパー）"""
from __future__ import annotations

import io
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DependencyMissingError, ImageDecodeError, InputTooLargeError
from .models import RasterImage


def decode_image(
    data: bytes,
    max_side: Optional[int] = None,
    max_pixels: Optional[int] = None,
) -> RasterImage:
    """
    エンコード済み画像をRGBAにデコード

    ピクセルを展開する前にヘッダのサイズで上限チェックを行う。

    Args:
        data: PNG/JPEG/WebP などのバイト列
        max_side: 一辺の最大ピクセル数
        max_pixels: 総ピクセル数の上限

    Returns:
        デコードされた画像
    """
    try:
        pil_img = Image.open(io.BytesIO(data))
    except Image.DecompressionBombError as exc:
        raise InputTooLargeError(f"画像が大きすぎます: {exc}") from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageDecodeError(f"画像をデコードできません: {exc}") from exc

    width, height = pil_img.size
    if (max_side is not None and (width > max_side or height > max_side)) or (
        max_pixels is not None and width * height > max_pixels
    ):
        raise InputTooLargeError(f"画像が大きすぎます: {width}x{height}")

    try:
        rgba = pil_img.convert("RGBA")
    except Image.DecompressionBombError as exc:
        raise InputTooLargeError(f"画像が大きすぎます: {exc}") from exc
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"画像をデコードできません: {exc}") from exc
    return RasterImage.from_array(np.array(rgba, dtype=np.uint8))


def encode_png(image: RasterImage) -> bytes:
    """RGBA画像をPNGにエンコード"""
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(image.pixels)).save(buffer, "PNG")
    return buffer.getvalue()


def to_gray(image: RasterImage) -> np.ndarray:
    """RGBA → グレースケール（アルファは無視）"""
    return cv2.cvtColor(image.pixels, cv2.COLOR_RGBA2GRAY)


def gradient_profile(gray: np.ndarray, direction: str) -> np.ndarray:
    """
    Sobel勾配の絶対値を軸方向に合計したプロファイル

    Args:
        gray: グレースケール画像
        direction: 'horizontal'（x微分を列ごとに合計）or 'vertical'（y微分を行ごとに合計）

    Returns:
        1次元のプロファイル
    """
    gray = np.ascontiguousarray(gray)
    if direction == "horizontal":
        sobel = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        return np.abs(sobel).sum(axis=0)
    sobel = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
    return np.abs(sobel).sum(axis=1)


def hex_to_rgba(value: str) -> Tuple[int, int, int, int]:
    """'#rrggbb' / '#rrggbbaa' → (r, g, b, a)"""
    value = value.lstrip("#")
    r, g, b = int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)
    a = int(value[6:8], 16) if len(value) >= 8 else 255
    return r, g, b, a


def rgba_to_hex(r: int, g: int, b: int, a: Optional[int] = None) -> str:
    value = f"#{r:02x}{g:02x}{b:02x}"
    if a is not None:
        value += f"{a:02x}"
    return value


def ensure_linalg() -> None:
    """SVDルーチンが使えることを処理開始前に確認する"""
    try:
        np.linalg.svd(np.eye(2))
    except (np.linalg.LinAlgError, AttributeError, RuntimeError) as exc:
        raise DependencyMissingError(
            "内容適応縮小にはSVD（numpy.linalg）が必要です。"
        ) from exc
