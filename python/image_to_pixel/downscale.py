"""ブロック単位の縮小（scale x scale → 1ピクセル）"""
from __future__ import annotations

from typing import Callable, Dict

import numpy as np

from .config import DownscaleMethod
from .models import RasterImage

OPAQUE_ALPHA = 128


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def _blocks(image: RasterImage, scale: int) -> np.ndarray:
    """(target_h, target_w, scale*scale, 4) のブロック配列（ブロック内は行優先）"""
    th, tw = image.height // scale, image.width // scale
    cropped = image.pixels[: th * scale, : tw * scale]
    return (
        cropped.reshape(th, scale, tw, scale, 4)
        .transpose(0, 2, 1, 3, 4)
        .reshape(th, tw, scale * scale, 4)
    )


def _opaque_mean(rgb: np.ndarray, opaque: np.ndarray) -> np.ndarray:
    """不透明サンプルのみのチャンネル平均（四捨五入）"""
    counts = opaque.sum(axis=-1, keepdims=True)
    sums = (rgb.astype(np.float64) * opaque[..., None]).sum(axis=-2)
    mean = np.divide(sums, counts, out=np.zeros_like(sums), where=counts > 0)
    return _round_half_up(mean)


def _alpha_median(alpha: np.ndarray) -> np.ndarray:
    return _round_half_up(np.median(alpha.astype(np.float64), axis=-1))


# ---------------------------------------------------------------------------
# ブロック集約
# ---------------------------------------------------------------------------


def _nearest(image: RasterImage, scale: int) -> np.ndarray:
    th, tw = image.height // scale, image.width // scale
    center = scale // 2
    return image.pixels[center::scale, center::scale][:th, :tw].copy()


def _median(blocks: np.ndarray) -> np.ndarray:
    opaque = blocks[..., 3] > OPAQUE_ALPHA
    rgb = np.where(opaque[..., None], blocks[..., :3].astype(np.float64), np.nan)
    has_color = opaque.any(axis=-1)
    # 全サンプルが透明なブロックは 0 として扱う
    med = np.nanmedian(np.where(has_color[..., None, None], rgb, 0.0), axis=-2)
    return _round_half_up(med)


def _mean(blocks: np.ndarray) -> np.ndarray:
    opaque = blocks[..., 3] > OPAQUE_ALPHA
    return _opaque_mean(blocks[..., :3], opaque)


def _mode(blocks: np.ndarray) -> np.ndarray:
    """チャンネルごとの最頻値（同数なら小さい値）"""
    th, tw, n, _ = blocks.shape
    opaque = (blocks[..., 3] > OPAQUE_ALPHA).reshape(-1, n)
    rgb = blocks[..., :3].reshape(-1, n, 3).astype(np.int64)
    num_blocks = th * tw

    block_ids = np.broadcast_to(np.arange(num_blocks)[:, None, None], rgb.shape)
    channel_ids = np.broadcast_to(np.arange(3)[None, None, :], rgb.shape)
    keys = (block_ids * 3 + channel_ids) * 256 + rgb
    mask = np.broadcast_to(opaque[:, :, None], rgb.shape)

    counts = np.bincount(keys[mask], minlength=num_blocks * 3 * 256).reshape(num_blocks, 3, 256)
    mode = counts.argmax(axis=2).astype(np.float64)
    mode[~opaque.any(axis=1)] = 0
    return mode.reshape(th, tw, 3)


_BLOCK_AGGREGATORS: Dict[DownscaleMethod, Callable[[np.ndarray], np.ndarray]] = {
    DownscaleMethod.MEDIAN: _median,
    DownscaleMethod.MEAN: _mean,
    DownscaleMethod.MODE: _mode,
}


def downscale_block(
    image: RasterImage,
    scale: int,
    method: DownscaleMethod = DownscaleMethod.MEDIAN,
) -> RasterImage:
    """
    nearest / median / mode / mean によるブロック縮小

    nearest はブロック中心のピクセルをそのまま使う。それ以外は不透明ピクセル
    （alpha > 128）だけで色を集約し、アルファは全サンプルの中央値を使う。

    Args:
        image: 入力画像
        scale: ブロックサイズ
        method: 集約方法

    Returns:
        縮小された画像
    """
    method = DownscaleMethod(method)
    th, tw = image.height // scale, image.width // scale
    if th <= 0 or tw <= 0:
        return RasterImage.blank(max(tw, 0), max(th, 0))

    if method == DownscaleMethod.NEAREST:
        return RasterImage(_nearest(image, scale))

    blocks = _blocks(image, scale)
    aggregator = _BLOCK_AGGREGATORS.get(method, _median)
    out = np.empty((th, tw, 4), dtype=np.uint8)
    out[:, :, :3] = np.clip(aggregator(blocks), 0, 255).astype(np.uint8)
    out[:, :, 3] = np.clip(_alpha_median(blocks[..., 3]), 0, 255).astype(np.uint8)
    return RasterImage(out)


def downscale_by_dominant_color(
    image: RasterImage,
    scale: int,
    threshold: float = 0.15,
) -> RasterImage:
    """
    ブロック内の最頻色（RGB完全一致）で縮小

    最頻色の割合が threshold 以上ならその色、満たなければ不透明ピクセルの平均色。
    チャンネル単位ではなく色単位で選ぶので、量子化済みのパレット以外の色は
    （平均にフォールバックしない限り）生まれない。アルファは中央値を 128 で二値化。

    Args:
        image: 入力画像（量子化済みを想定）
        scale: ブロックサイズ
        threshold: 最頻色を採用する最小割合

    Returns:
        縮小された画像
    """
    th, tw = image.height // scale, image.width // scale
    if th <= 0 or tw <= 0:
        return RasterImage.blank(max(tw, 0), max(th, 0))

    blocks = _blocks(image, scale)
    n = scale * scale
    num_blocks = th * tw
    flat = blocks.reshape(num_blocks, n, 4)
    opaque = flat[:, :, 3] > OPAQUE_ALPHA
    opaque_count = opaque.sum(axis=1)

    rgb = flat[:, :, :3].astype(np.int64)
    packed = (rgb[:, :, 0] << 16) | (rgb[:, :, 1] << 8) | rgb[:, :, 2]
    keys = np.arange(num_blocks, dtype=np.int64)[:, None] * (1 << 24) + packed
    sample_order = np.broadcast_to(np.arange(num_blocks * n).reshape(num_blocks, n), keys.shape)

    keys_opaque = keys[opaque]
    order_opaque = sample_order[opaque]

    out = np.zeros((num_blocks, 4), dtype=np.uint8)
    if keys_opaque.size:
        unique, first_idx, counts = np.unique(keys_opaque, return_index=True, return_counts=True)
        block_of = unique >> 24
        first_seen = order_opaque[first_idx]
        # ブロックごとに (出現回数の多い順, 先に出た順) で先頭を選ぶ
        order = np.lexsort((first_seen, -counts, block_of))
        sorted_blocks = block_of[order]
        is_head = np.ones(len(order), dtype=bool)
        is_head[1:] = sorted_blocks[1:] != sorted_blocks[:-1]
        heads = order[is_head]

        dom_block = block_of[heads]
        dom_color = unique[heads] & 0xFFFFFF
        dom_count = counts[heads]

        mean_rgb = _opaque_mean(rgb, opaque)
        use_dominant = dom_count / opaque_count[dom_block] >= threshold

        colors = mean_rgb[dom_block].astype(np.int64)
        colors[use_dominant] = np.stack([
            (dom_color[use_dominant] >> 16) & 0xFF,
            (dom_color[use_dominant] >> 8) & 0xFF,
            dom_color[use_dominant] & 0xFF,
        ], axis=1)

        alpha = np.median(flat[:, :, 3].astype(np.float64), axis=1)
        out[dom_block, :3] = colors.astype(np.uint8)
        out[dom_block, 3] = np.where(alpha[dom_block] > OPAQUE_ALPHA, 255, 0)

    return RasterImage(out.reshape(th, tw, 4))


_STRATEGIES: Dict[DownscaleMethod, Callable[[RasterImage, int, float], RasterImage]] = {
    DownscaleMethod.DOMINANT: lambda img, s, t: downscale_by_dominant_color(img, s, t),
    DownscaleMethod.MEDIAN: lambda img, s, t: downscale_block(img, s, DownscaleMethod.MEDIAN),
    DownscaleMethod.MODE: lambda img, s, t: downscale_block(img, s, DownscaleMethod.MODE),
    DownscaleMethod.MEAN: lambda img, s, t: downscale_block(img, s, DownscaleMethod.MEAN),
    DownscaleMethod.NEAREST: lambda img, s, t: downscale_block(img, s, DownscaleMethod.NEAREST),
}


def downscale(
    image: RasterImage,
    scale: int,
    method: DownscaleMethod = DownscaleMethod.DOMINANT,
    threshold: float = 0.15,
) -> RasterImage:
    """ブロック系の縮小を方法名でディスパッチ（content-adaptive は別関数）"""
    strategy = _STRATEGIES.get(DownscaleMethod(method))
    if strategy is None:
        raise ValueError(f"ブロック縮小では扱えない方法です: {method}")
    return strategy(image, scale, threshold)
