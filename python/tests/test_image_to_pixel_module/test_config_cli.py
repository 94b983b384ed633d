"""設定と CLI のテスト"""
from __future__ import annotations

import sys
from pathlib import Path

# python ディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import pytest
import typer
from pydantic import ValidationError
from typer.testing import CliRunner

from image_to_pixel.cli import app, load_config_from_path
from image_to_pixel.config import DownscaleMethod, PixelateConfig, QuantizeConfig, VectorizeConfig

runner = CliRunner()


class TestPixelateConfig:
    """PixelateConfig の検証"""

    def test_defaults(self):
        config = PixelateConfig()
        assert config.max_colors == 32
        assert config.downscale_method == DownscaleMethod.DOMINANT
        assert config.dom_mean_threshold == 0.15
        assert config.alpha_threshold == 128
        assert config.cleanup.jaggy and not config.cleanup.morph

    def test_camel_case_keys(self):
        config = PixelateConfig(maxColors=16, downscaleMethod="content-adaptive", cleanup={"morph": True})
        assert config.max_colors == 16
        assert config.downscale_method == DownscaleMethod.CONTENT_ADAPTIVE
        assert config.cleanup.morph

    @pytest.mark.parametrize(
        "options",
        [
            {"max_colors": 1},
            {"max_colors": 257},
            {"dom_mean_threshold": 0.0},
            {"dom_mean_threshold": 1.0},
            {"manual_scale": 0},
            {"alpha_threshold": 300},
            {"fixed_palette": ["red"]},
            {"downscale_method": "bicubic"},
            {"unknown": True},
        ],
    )
    def test_rejects_invalid_values(self, options):
        with pytest.raises(ValidationError):
            PixelateConfig(**options)

    def test_fixed_palette_is_normalized(self):
        config = PixelateConfig(fixed_palette=["#FF0000", "#00ff00"])
        assert config.fixed_palette == ["#ff0000", "#00ff00"]

    def test_is_immutable(self):
        config = PixelateConfig()
        with pytest.raises(ValidationError):
            config.max_colors = 8


class TestVectorizeConfig:
    """VectorizeConfig の検証"""

    def test_auto_color_count(self):
        assert QuantizeConfig(max_colors="auto").max_colors == "auto"

    def test_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            QuantizeConfig(max_colors=300)
        with pytest.raises(ValidationError):
            VectorizeConfig(trace_options={"length_threshold": 20})


class TestLoadConfig:
    """YAML設定の読み込み"""

    def test_reads_section(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("pixelate:\n  maxColors: 8\nvectorize:\n  quantize:\n    enabled: true\n", encoding="utf-8")

        assert load_config_from_path(path, "pixelate") == {"maxColors": 8}
        assert load_config_from_path(path, "vectorize") == {"quantize": {"enabled": True}}

    def test_flat_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_colors: 12\n", encoding="utf-8")
        assert load_config_from_path(path, "pixelate") == {"max_colors": 12}

    def test_missing_file(self, tmp_path):
        with pytest.raises(typer.BadParameter):
            load_config_from_path(tmp_path / "missing.yaml", "pixelate")

    def test_none(self):
        assert load_config_from_path(None, "pixelate") == {}


class TestCli:
    """CLI のテスト"""

    def test_pixelate(self, tmp_path, checker_png):
        src = tmp_path / "input.png"
        src.write_bytes(checker_png)
        manifest = tmp_path / "manifest.json"

        result = runner.invoke(app, ["pixelate", str(src), "--manifest", str(manifest)])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "input_pixel.png").exists()
        assert '"detected_scale": 4' in manifest.read_text(encoding="utf-8")

    def test_pixelate_with_overrides(self, tmp_path, checker_png):
        src = tmp_path / "input.png"
        src.write_bytes(checker_png)
        out = tmp_path / "out.png"

        result = runner.invoke(
            app, ["pixelate", str(src), "-o", str(out), "--scale", "2", "--method", "nearest"]
        )
        assert result.exit_code == 0, result.output
        assert out.exists()

    def test_invalid_config_is_bad_parameter(self, tmp_path, checker_png):
        src = tmp_path / "input.png"
        src.write_bytes(checker_png)
        config = tmp_path / "config.yaml"
        config.write_text("pixelate:\n  maxColors: 1\n", encoding="utf-8")

        result = runner.invoke(app, ["pixelate", str(src), "--config", str(config)])
        assert result.exit_code == 2

    def test_broken_image_exits_with_error(self, tmp_path):
        src = tmp_path / "broken.png"
        src.write_bytes(b"broken")

        result = runner.invoke(app, ["pixelate", str(src)])
        assert result.exit_code == 1

    def test_vectorize(self, tmp_path, checker_png):
        src = tmp_path / "input.png"
        src.write_bytes(checker_png)

        result = runner.invoke(app, ["vectorize", str(src), "--colors", "4"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "input.svg").read_text(encoding="utf-8").startswith("<svg")

    def test_batch(self, tmp_path, checker_png):
        src_dir = tmp_path / "images"
        src_dir.mkdir()
        (src_dir / "a.png").write_bytes(checker_png)
        (src_dir / "b.png").write_bytes(checker_png)
        (src_dir / "notes.txt").write_text("skip", encoding="utf-8")
        out_dir = tmp_path / "out"

        result = runner.invoke(app, ["batch", str(src_dir), "-o", str(out_dir), "-w", "2"])
        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in out_dir.iterdir()) == ["a_pixel.png", "b_pixel.png"]
