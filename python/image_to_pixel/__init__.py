"""ラスタ画像からドット絵（PNG / SVG）を再構成するツール"""
from __future__ import annotations

from .config import (
    CleanupConfig,
    DetectMethod,
    DownscaleMethod,
    EdgeDetectMethod,
    PixelateConfig,
    QuantizeMethod,
    TraceOptions,
    VectorizeConfig,
)
from .errors import (
    DependencyMissingError,
    EmptyResultError,
    ImageDecodeError,
    InputTooLargeError,
    PixelPipelineError,
)
from .models import ProcessingManifest, ProcessResult, RasterImage, VectorizeManifest, VectorizeResult
from .pipeline import process_image, vectorize_image
from .worker import PixelWorker, WorkerRequest, WorkerResponse

__all__ = [
    "CleanupConfig",
    "DetectMethod",
    "DownscaleMethod",
    "EdgeDetectMethod",
    "PixelateConfig",
    "QuantizeMethod",
    "TraceOptions",
    "VectorizeConfig",
    "DependencyMissingError",
    "EmptyResultError",
    "ImageDecodeError",
    "InputTooLargeError",
    "PixelPipelineError",
    "ProcessingManifest",
    "ProcessResult",
    "RasterImage",
    "VectorizeManifest",
    "VectorizeResult",
    "process_image",
    "vectorize_image",
    "PixelWorker",
    "WorkerRequest",
    "WorkerResponse",
]
