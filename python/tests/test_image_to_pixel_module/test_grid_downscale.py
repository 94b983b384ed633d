"""グリッド整列とブロック縮小のテスト"""
from __future__ import annotations

import sys
from pathlib import Path

# python ディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import numpy as np
import pytest

from image_to_pixel.config import DownscaleMethod
from image_to_pixel.content_adaptive import content_adaptive_downscale
from image_to_pixel.downscale import downscale, downscale_block, downscale_by_dominant_color
from image_to_pixel.grid import find_optimal_crop, snap_to_grid
from image_to_pixel.models import GridOffset, RasterImage

from conftest import BLUE, RED, make_checker

TRANSPARENT = (0, 0, 0, 0)


def _bordered_checker() -> np.ndarray:
    """2ピクセルの透明な縁 + 4x4ブロックの市松模様（36x36）"""
    pixels = np.zeros((36, 36, 4), dtype=np.uint8)
    pixels[2:34, 2:34] = make_checker(blocks=8, size=4)
    return pixels


def _block(colors) -> RasterImage:
    """行優先に並べた色リストから正方形ブロックを作る"""
    side = int(len(colors) ** 0.5)
    return RasterImage(np.array(colors, dtype=np.uint8).reshape(side, side, 4))


class TestGridSnapping:
    """グリッド整列のテスト"""

    def test_detects_border_offset(self):
        image = RasterImage(_bordered_checker())
        assert find_optimal_crop(image, 4) == GridOffset(2, 2)

    def test_snap_crops_to_grid(self):
        pixels = _bordered_checker()
        snapped, offset = snap_to_grid(RasterImage(pixels), 4)

        assert offset == GridOffset(2, 2)
        assert snapped.size == (32, 32)
        assert np.array_equal(snapped.pixels, pixels[2:34, 2:34])

    def test_aligned_image_has_zero_offset(self):
        image = RasterImage(make_checker())
        assert find_optimal_crop(image, 4) == GridOffset(0, 0)

    def test_skips_when_smaller_than_one_cell(self):
        image = RasterImage(np.full((3, 3, 4), 255, dtype=np.uint8))
        snapped, offset = snap_to_grid(image, 4)
        assert offset is None
        assert snapped is image


class TestDominantDownscale:
    """最頻色による縮小のテスト"""

    def _mixed_block(self) -> RasterImage:
        # 赤5・青3・透明1
        red, blue = (*RED, 255), (*BLUE, 255)
        return _block([red, red, red, red, red, blue, blue, blue, TRANSPARENT])

    def test_dominant_color_wins(self):
        result = downscale_by_dominant_color(self._mixed_block(), 3, threshold=0.15)
        assert tuple(result.pixels[0, 0]) == (255, 0, 0, 255)

    def test_falls_back_to_mean(self):
        """最頻色の割合が閾値未満なら不透明ピクセルの平均色"""
        result = downscale_by_dominant_color(self._mixed_block(), 3, threshold=0.7)
        assert tuple(result.pixels[0, 0]) == (159, 0, 96, 255)

    def test_tie_goes_to_first_seen(self):
        red, blue = (*RED, 255), (*BLUE, 255)
        result = downscale_by_dominant_color(_block([blue, red, red, blue]), 2, threshold=0.15)
        assert tuple(result.pixels[0, 0]) == (0, 0, 255, 255)

    def test_transparent_block(self):
        result = downscale_by_dominant_color(_block([TRANSPARENT] * 4), 2)
        assert tuple(result.pixels[0, 0]) == (0, 0, 0, 0)

    def test_checker_is_preserved(self, checker_pixels):
        result = downscale_by_dominant_color(RasterImage(checker_pixels), 4)
        assert result.size == (8, 8)
        assert np.array_equal(result.pixels, checker_pixels[::4, ::4])


class TestBlockDownscale:
    """nearest / median / mode / mean のテスト"""

    def test_nearest_samples_block_center(self, checker_pixels):
        result = downscale_block(RasterImage(checker_pixels), 4, DownscaleMethod.NEAREST)
        assert np.array_equal(result.pixels, checker_pixels[2::4, 2::4])

    def test_mean_ignores_transparent(self):
        block = _block([(10, 10, 10, 255), (20, 20, 20, 255), TRANSPARENT, TRANSPARENT])
        result = downscale_block(block, 2, DownscaleMethod.MEAN)
        assert tuple(result.pixels[0, 0, :3]) == (15, 15, 15)

    def test_median(self):
        block = _block([(10, 0, 0, 255), (20, 0, 0, 255), (30, 0, 0, 255), (40, 0, 0, 255)])
        result = downscale_block(block, 2, DownscaleMethod.MEDIAN)
        assert result.pixels[0, 0, 0] == 25
        assert result.pixels[0, 0, 3] == 255

    def test_mode_per_channel(self):
        block = _block([(10, 1, 0, 255), (10, 2, 0, 255), (20, 2, 0, 255), (30, 3, 0, 255)])
        result = downscale_block(block, 2, DownscaleMethod.MODE)
        assert tuple(result.pixels[0, 0, :3]) == (10, 2, 0)

    def test_output_size_is_floor(self):
        image = RasterImage(np.full((9, 10, 4), 255, dtype=np.uint8))
        for method in DownscaleMethod:
            if method == DownscaleMethod.CONTENT_ADAPTIVE:
                continue
            assert downscale(image, 3, method).size == (3, 3)

    def test_scale_larger_than_image_gives_empty(self):
        image = RasterImage(np.full((8, 8, 4), 255, dtype=np.uint8))
        for method in DownscaleMethod:
            if method == DownscaleMethod.CONTENT_ADAPTIVE:
                continue
            assert downscale(image, 10, method).size == (0, 0)

    def test_content_adaptive_is_not_block_method(self):
        image = RasterImage(np.full((8, 8, 4), 255, dtype=np.uint8))
        with pytest.raises(ValueError):
            downscale(image, 2, DownscaleMethod.CONTENT_ADAPTIVE)


class TestContentAdaptiveDownscale:
    """内容適応型縮小のテスト"""

    def test_uniform_image_stays_uniform(self):
        pixels = np.zeros((16, 16, 4), dtype=np.uint8)
        pixels[:, :] = (30, 120, 200, 255)
        result = content_adaptive_downscale(RasterImage(pixels), 4, 4)

        assert result.size == (4, 4)
        assert np.all(result.pixels == np.array([30, 120, 200, 255], dtype=np.uint8))

    def test_colors_come_from_source(self, checker_pixels):
        """出力色は必ず入力に存在する色"""
        result = content_adaptive_downscale(RasterImage(checker_pixels), 8, 8)
        colors = {tuple(c) for c in result.pixels.reshape(-1, 4)[:, :3]}

        assert result.size == (8, 8)
        assert colors <= {RED, BLUE}

    def test_zero_target_gives_empty(self):
        image = RasterImage(np.full((8, 8, 4), 255, dtype=np.uint8))
        assert content_adaptive_downscale(image, 0, 0).size == (0, 0)

    def test_returns_kernels(self):
        pixels = np.full((12, 12, 4), 200, dtype=np.uint8)
        result, kernels = content_adaptive_downscale(
            RasterImage(pixels), 3, 3, return_kernels=True
        )
        assert result.size == (3, 3)
        assert len(kernels) == 9
        assert kernels[0].covariance.shape == (2, 2)
        for kernel in kernels:
            assert 0 <= kernel.mean[0] <= 12
            assert 0 <= kernel.mean[1] <= 12
