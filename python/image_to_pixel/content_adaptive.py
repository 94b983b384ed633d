"""
内容適応型の縮小（Kopf et al. "Content-Adaptive Image Downscaling" のドット絵向け変形）

出力1ピクセルごとに異方性ガウスカーネルを置き、EM的に位置と形を更新する。
色はカーネル内の重み付き平均ではなく、LAB空間でビン分けした色のうち
責任度の合計が最大のものを選ぶ（パレットの離散性を保つため）。
アルファは別に面積平均で縮小する。
"""
from __future__ import annotations

import logging
import time
from typing import List, Tuple, Union

import cv2
import numpy as np

from .models import Kernel, RasterImage

logger = logging.getLogger(__name__)

NUM_ITERATIONS = 3
WEIGHT_CUTOFF = 1e-5
EPS = 1e-9
LAB_BIN = 5.0
MIN_SINGULAR_VALUE = 0.5
# 1チャンク内で同時に評価するカーネル窓の要素数
_CHUNK_ELEMENTS = 2_000_000


class _Windows:
    """カーネル群の探索窓（各カーネルの平均 ±2r を固定サイズで切り出す）"""

    def __init__(self, width: int, height: int, rx: float, ry: float) -> None:
        self.width = width
        self.height = height
        self.rx = rx
        self.ry = ry
        self.offsets_x = np.arange(int(np.ceil(4 * rx)) + 2)
        self.offsets_y = np.arange(int(np.ceil(4 * ry)) + 2)

    @property
    def area(self) -> int:
        return len(self.offsets_x) * len(self.offsets_y)

    def gather(self, mu: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns:
            (xs, ys, valid) xs は (k, 1, Wx)、ys は (k, Wy, 1)、valid は (k, Wy, Wx)
        """
        x_lo = np.floor(mu[:, 0] - 2 * self.rx)
        x_hi = np.minimum(self.width, np.ceil(mu[:, 0] + 2 * self.rx))
        y_lo = np.floor(mu[:, 1] - 2 * self.ry)
        y_hi = np.minimum(self.height, np.ceil(mu[:, 1] + 2 * self.ry))

        xs = x_lo[:, None] + self.offsets_x[None, :]
        ys = y_lo[:, None] + self.offsets_y[None, :]
        valid_x = (xs >= 0) & (xs < x_hi[:, None])
        valid_y = (ys >= 0) & (ys < y_hi[:, None])

        valid = valid_y[:, :, None] & valid_x[:, None, :]
        return xs[:, None, :], ys[:, :, None], valid

    def pixel_index(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        cx = np.clip(xs, 0, self.width - 1).astype(np.int64)
        cy = np.clip(ys, 0, self.height - 1).astype(np.int64)
        return cy * self.width + cx


def _kernel_weights(
    windows: _Windows,
    mu: np.ndarray,
    sigma: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """E-step の前半：各カーネル内で正規化したガウス重み"""
    xs, ys, valid = windows.gather(mu)

    s00, s01, s10, s11 = sigma[:, 0, 0], sigma[:, 0, 1], sigma[:, 1, 0], sigma[:, 1, 1]
    inv_det = 1.0 / (s00 * s11 - s01 * s10 + EPS)
    i00 = (s11 * inv_det)[:, None, None]
    i01 = (-s01 * inv_det)[:, None, None]
    i11 = (s00 * inv_det)[:, None, None]

    dx = xs - mu[:, 0, None, None]
    dy = ys - mu[:, 1, None, None]
    exponent = dx * dx * i00 + 2 * dx * dy * i01 + dy * dy * i11
    weight = np.exp(-0.5 * exponent)

    valid = valid & (weight > WEIGHT_CUTOFF)
    weight = np.where(valid, weight, 0.0)
    w_sum = weight.sum(axis=(1, 2)) + EPS
    normalized = weight / w_sum[:, None, None]

    return normalized, valid, windows.pixel_index(xs, ys), xs, ys


def _chunks(num_kernels: int, area: int):
    step = max(1, _CHUNK_ELEMENTS // max(1, area))
    for start in range(0, num_kernels, step):
        yield slice(start, min(num_kernels, start + step))


def _clamp_covariance(sigma: np.ndarray, max_singular: float) -> np.ndarray:
    """C-step：特異値を [0.5, max_singular] に制限して共分散を作り直す"""
    u, s, vh = np.linalg.svd(sigma)
    s = np.clip(s, MIN_SINGULAR_VALUE, max_singular)
    return (u * s[:, None, :]) @ vh


def _select_colors(
    gamma: np.ndarray,
    valid: np.ndarray,
    pixel_idx: np.ndarray,
    bin_ids: np.ndarray,
    num_bins: int,
) -> np.ndarray:
    """
    各カーネルで責任度の合計が最大の色ビンを選び、そのビンで最初に現れた
    ソースピクセルの位置を返す（同点なら先に現れたビン）
    """
    k = gamma.shape[0]
    local = np.broadcast_to(np.arange(k)[:, None, None], gamma.shape)[valid]
    idx = pixel_idx[valid]
    keys = local.astype(np.int64) * num_bins + bin_ids[idx]

    unique, first, inverse = np.unique(keys, return_index=True, return_inverse=True)
    totals = np.bincount(inverse.reshape(-1), weights=gamma[valid], minlength=len(unique))
    kernel_of = unique // num_bins

    order = np.lexsort((first, -totals, kernel_of))
    sorted_kernels = kernel_of[order]
    is_head = np.ones(len(order), dtype=bool)
    is_head[1:] = sorted_kernels[1:] != sorted_kernels[:-1]
    heads = order[is_head]

    chosen = np.full(k, -1, dtype=np.int64)
    chosen[kernel_of[heads]] = idx[first[heads]]
    return chosen


def content_adaptive_downscale(
    image: RasterImage,
    target_w: int,
    target_h: int,
    iterations: int = NUM_ITERATIONS,
    return_kernels: bool = False,
) -> Union[RasterImage, Tuple[RasterImage, List[Kernel]]]:
    """
    内容適応型の縮小

    Args:
        image: 入力画像
        target_w: 出力幅
        target_h: 出力高さ
        iterations: EM反復回数
        return_kernels: True の場合は最終カーネルも返す（デバッグ用）

    Returns:
        縮小画像（return_kernels=True なら (画像, カーネル一覧)）
    """
    start_time = time.time()
    wi, hi = image.width, image.height
    if target_w <= 0 or target_h <= 0:
        empty = RasterImage.blank(max(target_w, 0), max(target_h, 0))
        return (empty, []) if return_kernels else empty

    wo, ho = target_w, target_h
    rx, ry = wi / wo, hi / ho
    max_singular = max(1.0, 0.5 * (rx + ry) / 2.0)

    rgb = np.ascontiguousarray(image.rgb)
    lab = cv2.cvtColor(rgb.astype(np.float32) / 255.0, cv2.COLOR_RGB2Lab).reshape(-1, 3)
    binned = np.floor(lab / LAB_BIN + 0.5) * LAB_BIN
    bins, bin_ids = np.unique(binned, axis=0, return_inverse=True)
    bin_ids = bin_ids.reshape(-1).astype(np.int64)
    num_bins = len(bins)

    # カーネル初期化：ブロック中心・等方共分散 (r/3)^2
    grid_x, grid_y = np.meshgrid(np.arange(wo), np.arange(ho))
    mu = np.stack([(grid_x.ravel() + 0.5) * rx, (grid_y.ravel() + 0.5) * ry], axis=1)
    num_kernels = wo * ho
    sigma = np.zeros((num_kernels, 2, 2))
    sigma[:, 0, 0] = (rx / 3) ** 2
    sigma[:, 1, 1] = (ry / 3) ** 2

    windows = _Windows(wi, hi, rx, ry)
    chosen = np.full(num_kernels, -1, dtype=np.int64)
    iterations = max(1, iterations)

    for iteration in range(iterations):
        # E-step：ピクセルごとの責任度の総和（カーネル間の正規化に使う）
        gamma_sum = np.full(wi * hi, EPS)
        for chunk in _chunks(num_kernels, windows.area):
            normalized, valid, pixel_idx, _, _ = _kernel_weights(windows, mu[chunk], sigma[chunk])
            gamma_sum += np.bincount(pixel_idx[valid], weights=normalized[valid], minlength=wi * hi)

        # M-step：位置と共分散を更新、最終反復では色も選ぶ
        next_mu = np.empty_like(mu)
        next_sigma = np.empty_like(sigma)
        for chunk in _chunks(num_kernels, windows.area):
            normalized, valid, pixel_idx, xs, ys = _kernel_weights(windows, mu[chunk], sigma[chunk])
            gamma = np.where(valid, normalized / gamma_sum[pixel_idx], 0.0)
            g_sum = gamma.sum(axis=(1, 2)) + EPS

            new_x = (gamma * xs).sum(axis=(1, 2)) / g_sum
            new_y = (gamma * ys).sum(axis=(1, 2)) / g_sum
            dx = xs - new_x[:, None, None]
            dy = ys - new_y[:, None, None]
            sxx = (gamma * dx * dx).sum(axis=(1, 2)) / g_sum
            sxy = (gamma * dx * dy).sum(axis=(1, 2)) / g_sum
            syy = (gamma * dy * dy).sum(axis=(1, 2)) / g_sum

            next_mu[chunk, 0] = new_x
            next_mu[chunk, 1] = new_y
            next_sigma[chunk] = np.stack(
                [np.stack([sxx, sxy], axis=1), np.stack([sxy, syy], axis=1)], axis=1
            )

            if iteration == iterations - 1:
                chosen[chunk] = _select_colors(gamma, valid, pixel_idx, bin_ids, num_bins)

        mu = next_mu
        sigma = _clamp_covariance(next_sigma, max_singular)

    # 候補が得られなかったカーネルは平均位置のピクセルを使う
    missing = chosen < 0
    if np.any(missing):
        fx = np.clip(np.floor(mu[missing, 0]), 0, wi - 1).astype(np.int64)
        fy = np.clip(np.floor(mu[missing, 1]), 0, hi - 1).astype(np.int64)
        chosen[missing] = fy * wi + fx

    out = np.empty((ho, wo, 4), dtype=np.uint8)
    out[:, :, :3] = rgb.reshape(-1, 3)[chosen].reshape(ho, wo, 3)
    out[:, :, 3] = cv2.resize(
        np.ascontiguousarray(image.alpha), (wo, ho), interpolation=cv2.INTER_AREA
    )
    logger.debug(
        "内容適応縮小: %dx%d -> %dx%d (%.2fs)", wi, hi, wo, ho, time.time() - start_time
    )

    result = RasterImage(out)
    if not return_kernels:
        return result

    kernels = [
        Kernel(
            mean=(float(mu[k, 0]), float(mu[k, 1])),
            covariance=sigma[k].copy(),
            color=tuple(float(v) for v in lab[chosen[k]]),
        )
        for k in range(num_kernels)
    ]
    return result, kernels
