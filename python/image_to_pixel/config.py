"""パイプライン設定（pydantic）

各数値パラメータは範囲を検証し、範囲外はオーケストレータに渡る前に
ValidationError として拒否する。キーは snake_case / camelCase のどちらでも受け付ける。
"""
from __future__ import annotations

import re
from enum import Enum
from typing import List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


class DownscaleMethod(str, Enum):
    DOMINANT = "dominant"
    MEDIAN = "median"
    MODE = "mode"
    MEAN = "mean"
    NEAREST = "nearest"
    CONTENT_ADAPTIVE = "content-adaptive"


class DetectMethod(str, Enum):
    AUTO = "auto"
    RUNS = "runs"
    EDGE = "edge"


class EdgeDetectMethod(str, Enum):
    TILED = "tiled"
    LEGACY = "legacy"


class QuantizeMethod(str, Enum):
    MEDIAN_CUT = "median_cut"
    KMEANS = "kmeans"


class _BaseConfig(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class CleanupConfig(_BaseConfig):
    morph: bool = False
    jaggy: bool = True


class PixelateConfig(_BaseConfig):
    """ドット絵化パイプラインの設定"""

    max_colors: int = Field(32, ge=2, le=256)
    auto_color_count: bool = False
    downscale_method: DownscaleMethod = DownscaleMethod.DOMINANT
    detect_method: DetectMethod = DetectMethod.AUTO
    edge_detect_method: EdgeDetectMethod = EdgeDetectMethod.TILED
    dom_mean_threshold: float = Field(0.15, gt=0.0, lt=1.0)
    manual_scale: Optional[int] = Field(None, ge=1)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    fixed_palette: Optional[List[str]] = None
    alpha_threshold: Optional[int] = Field(128, ge=0, le=255)
    snap_grid: bool = True
    max_grid_size: int = Field(0, ge=0)
    quantize_method: QuantizeMethod = QuantizeMethod.MEDIAN_CUT

    @field_validator("fixed_palette")
    @classmethod
    def _validate_fixed_palette(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        for color in value:
            if not _HEX_COLOR.match(color):
                raise ValueError(f"fixed_palette は #rrggbb 形式で指定してください: {color}")
        return [color.lower() for color in value] or None


# ---------------------------------------------------------------------------
# ベクター化
# ---------------------------------------------------------------------------


class PreProcessConfig(_BaseConfig):
    enabled: bool = False
    filter: Literal["bilateral", "median"] = "bilateral"
    value: int = Field(15, ge=0, le=99)
    morphology: bool = True
    morphology_kernel: int = Field(3, ge=1, le=31)


class QuantizeConfig(_BaseConfig):
    enabled: bool = False
    max_colors: Union[int, Literal["auto"]] = 16

    @field_validator("max_colors")
    @classmethod
    def _validate_max_colors(cls, value: Union[int, str]) -> Union[int, str]:
        if value == "auto":
            return value
        if not 2 <= int(value) <= 256:
            raise ValueError("max_colors は 2〜256 または 'auto' を指定してください。")
        return value


class PostProcessConfig(_BaseConfig):
    enabled: bool = False
    filter: Literal["gaussian", "median"] = "gaussian"
    value: int = Field(3, ge=0, le=99)


class TraceOptions(_BaseConfig):
    """トレーサーの生オプション"""

    engine: Literal["contour", "vtracer"] = "contour"
    min_area: int = Field(0, ge=0)
    number_of_colors: int = Field(16, ge=2, le=256)
    mode: Literal["polygon", "spline", "none"] = "polygon"
    filter_speckle: int = Field(4, ge=0)
    color_precision: int = Field(8, ge=1, le=8)
    corner_threshold: int = Field(60, ge=0, le=180)
    length_threshold: float = Field(4.0, ge=3.5, le=10.0)
    splice_threshold: int = Field(45, ge=0, le=180)
    # 量子化ステップから注入される確定パレット（RGB）
    palette: Optional[List[Tuple[int, int, int]]] = None


class VectorizeConfig(_BaseConfig):
    """ベクター化パイプラインの設定"""

    pre_process: PreProcessConfig = Field(default_factory=PreProcessConfig)
    quantize: QuantizeConfig = Field(default_factory=QuantizeConfig)
    post_process: PostProcessConfig = Field(default_factory=PostProcessConfig)
    trace_options: TraceOptions = Field(default_factory=TraceOptions)
