"""ドット絵再構成パイプラインの例外定義

ここで定義する例外はすべて「致命的な入力エラー」であり、リクエスト全体を中断する。
量子化の失敗やスケール検出の曖昧さなどの劣化は例外にせず、マニフェストに記録する。
"""
from __future__ import annotations


class PixelPipelineError(Exception):
    """パイプライン全体の基底例外"""


class InputTooLargeError(PixelPipelineError):
    """入力ファイルまたはデコード後の画像サイズが上限を超えている"""


class ImageDecodeError(PixelPipelineError):
    """入力データを画像としてデコードできない"""


class DependencyMissingError(PixelPipelineError):
    """必要な数値計算ルーチン（SVDなど）が利用できない"""


class EmptyResultError(PixelPipelineError):
    """処理結果が空の画像になった"""
