"""パイプラインで受け渡すデータモデル"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


@dataclass
class RasterImage:
    """RGBA8 のラスタ画像（行優先・左上原点）

    pixels は (height, width, 4) の uint8 配列。各ステージは受け取った画像を
    自分だけが保持する前提で扱い、縮小や量子化では新しい RasterImage を返す。
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"RGBA配列が必要です: shape={self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            self.pixels = self.pixels.astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        """RGB / RGBA / グレースケール配列から RasterImage を作る"""
        array = np.asarray(array)
        if array.ndim == 2:
            array = np.stack([array, array, array], axis=2)
        if array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 255, dtype=np.uint8)
            array = np.concatenate([array.astype(np.uint8), alpha], axis=2)
        return cls(np.ascontiguousarray(array, dtype=np.uint8))

    @classmethod
    def blank(cls, width: int, height: int) -> "RasterImage":
        return cls(np.zeros((height, width, 4), dtype=np.uint8))

    def copy(self) -> "RasterImage":
        return RasterImage(self.pixels.copy())

    def to_bytes(self) -> bytes:
        """インターリーブ RGBA のバイト列"""
        return np.ascontiguousarray(self.pixels).tobytes()

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[:, :, :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[:, :, 3]


@dataclass(frozen=True)
class PaletteEntry:
    r: int
    g: int
    b: int
    a: int = 255

    def to_hex(self, with_alpha: bool = False) -> str:
        value = f"#{self.r:02x}{self.g:02x}{self.b:02x}"
        if with_alpha:
            value += f"{self.a:02x}"
        return value

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return self.r, self.g, self.b, self.a


@dataclass(frozen=True)
class GridOffset:
    """グリッド整列用のクロップ原点（各軸 0 <= v < scale）"""

    x: int = 0
    y: int = 0


@dataclass
class Kernel:
    """内容適応リサンプラの出力1ピクセルに対応するガウスカーネル"""

    mean: Tuple[float, float]
    covariance: np.ndarray
    color: Tuple[float, float, float]


# ---------------------------------------------------------------------------
# マニフェスト
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ScaleDetectionInfo(_Frozen):
    method: str
    edge_method: Optional[str] = None
    detected_scale: int
    manual_scale: Optional[int] = None
    method_used: str


class ColorQuantizationInfo(_Frozen):
    max_colors: int
    effective_max_colors: int
    initial_colors: int
    final_colors: int
    fixed_palette: Optional[int] = None
    fallback: bool = False


class DownscalingInfo(_Frozen):
    method: str
    scale_factor: int
    dom_mean_threshold: float
    applied: bool


class CleanupInfo(_Frozen):
    morphological: bool
    jaggy: bool


class AlphaProcessingInfo(_Frozen):
    threshold: Optional[int] = None
    binarized: bool


class GridSnappingInfo(_Frozen):
    enabled: bool
    applied: bool
    offset: Optional[Tuple[int, int]] = None


class ProcessingSteps(_Frozen):
    scale_detection: ScaleDetectionInfo
    color_quantization: ColorQuantizationInfo
    downscaling: DownscalingInfo
    cleanup: CleanupInfo
    alpha_processing: AlphaProcessingInfo
    grid_snapping: GridSnappingInfo


class ProcessingManifest(_Frozen):
    """ドット絵化の来歴。後段では参照せず、呼び出し元に返すだけ。"""

    original_size: Tuple[int, int]
    final_size: Tuple[int, int]
    processing_steps: ProcessingSteps
    processing_time_ms: int
    step_timings_ms: Dict[str, float] = Field(default_factory=dict)
    timestamp: str


class VectorizeManifest(_Frozen):
    original_size: Tuple[int, int]
    processing_time_ms: int
    timestamp: str
    options: Dict[str, Any]
    pre_process: Dict[str, Any]
    quantize: Dict[str, Any]
    post_process: Dict[str, Any]
    background_removed: bool = False
    skipped_steps: List[str] = Field(default_factory=list)


@dataclass
class ProcessResult:
    png: bytes
    image: RasterImage
    palette: List[str]
    manifest: ProcessingManifest


@dataclass
class VectorizeResult:
    svg: str
    manifest: VectorizeManifest
    palette: List[PaletteEntry]
