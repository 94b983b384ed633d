"""スケール検出のテスト"""
from __future__ import annotations

import sys
from pathlib import Path

# python ディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import numpy as np

import image_to_pixel.scale as scale_module
from image_to_pixel.config import DetectMethod, EdgeDetectMethod
from image_to_pixel.models import RasterImage
from image_to_pixel.scale import (
    ScaleDetection,
    _mode,
    detect_scale,
    edge_aware_detect,
    legacy_edge_detect,
    runs_based_detect,
    scale_from_signal,
)

from conftest import make_checker


def _grid_lines(size: int = 240, period: int = 8, blank_rows: int = 0) -> RasterImage:
    """1ピクセル幅の線を period ごとに引いた格子（ラン長の最大公約数は 1 になる）"""
    pixels = np.full((size, size, 4), 200, dtype=np.uint8)
    pixels[:, :, 3] = 255
    lines = np.arange(0, size, period)
    pixels[:, lines, :3] = 0
    pixels[lines, :, :3] = 0
    pixels[:blank_rows, :, :3] = 200
    return RasterImage(pixels)


class TestRunsBasedDetect:
    """ラン長によるスケール検出のテスト"""

    def test_checkerboard_of_4px_blocks(self):
        """4x4ブロックの市松模様（32x32）は scale=4"""
        image = RasterImage(make_checker(blocks=8, size=4))
        assert runs_based_detect(image) == 4

    def test_checkerboard_of_3px_blocks(self):
        image = RasterImage(make_checker(blocks=10, size=3))
        assert runs_based_detect(image) == 3

    def test_noise_has_too_few_runs(self):
        """同色のランがほとんどないノイズ画像は 1"""
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(32, 32, 4), dtype=np.uint8)
        assert runs_based_detect(RasterImage(pixels)) == 1


class TestScaleFromSignal:
    """勾配プロファイルからの周期推定のテスト"""

    def test_regular_peaks(self):
        signal = np.zeros(40)
        signal[2::4] = 10.0
        assert scale_from_signal(signal) == 4

    def test_flat_signal(self):
        """ピークがなければ 1"""
        assert scale_from_signal(np.zeros(50)) == 1

    def test_too_short(self):
        assert scale_from_signal(np.array([1.0, 5.0])) == 1

    def test_mode_prefers_first_to_reach_count(self):
        assert _mode([3, 5, 5, 3]) == 5
        assert _mode([4, 4, 6, 6, 6]) == 6
        assert _mode([]) == 0


class TestDetectScale:
    """戦略ディスパッチのテスト"""

    def test_runs_strategy(self):
        image = RasterImage(make_checker())
        result = detect_scale(image, DetectMethod.RUNS)
        assert result == ScaleDetection(4, "runs")

    def test_auto_uses_runs_first(self):
        image = RasterImage(make_checker())
        result = detect_scale(image, DetectMethod.AUTO)
        assert result.scale == 4
        assert result.method_used == "runs"

    def test_edge_strategy_reports_edge_method(self):
        image = RasterImage(make_checker())
        tiled = detect_scale(image, DetectMethod.EDGE, EdgeDetectMethod.TILED)
        legacy = detect_scale(image, DetectMethod.EDGE, EdgeDetectMethod.LEGACY)

        assert tiled.scale >= 1
        assert tiled.method_used == "edge:tiled"
        assert legacy.scale >= 1
        assert legacy.method_used == "edge:legacy"

    def test_accepts_plain_strings(self):
        image = RasterImage(make_checker())
        assert detect_scale(image, "runs", "tiled").scale == 4

    def test_strategy_failure_falls_back_to_one(self, monkeypatch):
        """戦略内の例外は scale=1 として扱われる"""

        def broken(image, edge_method):
            raise RuntimeError("boom")

        monkeypatch.setitem(scale_module._STRATEGIES, DetectMethod.RUNS, broken)
        result = detect_scale(RasterImage(make_checker()), DetectMethod.RUNS)
        assert result == ScaleDetection(1, "fallback")


class TestEdgeDetect:
    """勾配ベースの検出のテスト"""

    def test_grid_defeats_runs(self):
        assert runs_based_detect(_grid_lines()) == 1

    def test_tiled_finds_line_period(self):
        assert edge_aware_detect(_grid_lines()) == 8

    def test_legacy_finds_line_period(self):
        assert legacy_edge_detect(_grid_lines()) == 8

    def test_blank_tiles_are_skipped(self):
        """上半分が無地でも残りのタイルから周期を求める"""
        assert edge_aware_detect(_grid_lines(blank_rows=120)) == 8

    def test_fully_blank_image(self):
        blank = RasterImage(np.full((240, 240, 4), 200, dtype=np.uint8))
        assert edge_aware_detect(blank) == 1

    def test_auto_falls_back_to_edge(self):
        result = detect_scale(_grid_lines(), DetectMethod.AUTO, EdgeDetectMethod.TILED)
        assert result == ScaleDetection(8, "edge:tiled")

    def test_large_image_switches_to_runs(self, monkeypatch):
        monkeypatch.setattr(scale_module, "LARGE_IMAGE_PIXELS", 100)
        image = RasterImage(make_checker())

        assert edge_aware_detect(image) == 4
        assert detect_scale(image, DetectMethod.EDGE) == ScaleDetection(4, "runs")
