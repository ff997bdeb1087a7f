"""
Attention statistics for CvT stages.

Computes, per stage and block, the attention-weighted mean distance between
a query position and the positions it attends to, plus the attention entropy.
Queries and keys live on different grids (keys/values are strided), so each
cell is placed at the centre of the tokens its projection window covers and
mapped to input pixels with the stage's cumulative stride. The class token is
left out.

Reference: Dosovitskiy et al., "An Image is Worth 16x16 Words", ICLR 2021
(mean attention distance).
"""

import logging
from collections import defaultdict
from typing import Dict, Tuple

import torch
import torch.nn as nn
from torch.utils.data import DataLoader

from cvt_zsl.models.cvt import ConvolutionalVisionTransformer

logger = logging.getLogger(__name__)


def _projection_geometry(attn, kind: str) -> Tuple[int, int, int]:
    """(stride, padding, kernel) of the q or kv projection, in tokens."""
    method = "linear" if kind == "q" and attn.method == "avg" else attn.method
    if method == "linear":
        return 1, 0, 1
    if kind == "q":
        return attn.stride_q, attn.padding_q, attn.kernel_size
    return attn.stride_kv, attn.padding_kv, attn.kernel_size


def _grid_coords(
    grid: Tuple[int, int], geometry: Tuple[int, int, int], pixel_stride: float, device: torch.device
) -> torch.Tensor:
    stride, padding, kernel = geometry
    ys, xs = torch.meshgrid(
        torch.arange(grid[0], device=device, dtype=torch.float32),
        torch.arange(grid[1], device=device, dtype=torch.float32),
        indexing="ij",
    )
    # Cell i covers tokens stride * i - padding .. stride * i - padding + kernel - 1.
    tokens = torch.stack([ys, xs], dim=-1).reshape(-1, 2) * stride - padding + (kernel - 1) / 2
    return (tokens + 0.5) * pixel_stride


class AttentionAnalyzer:
    """
    Mean attention distance and entropy for every CvT block.

    Works with a plain ConvolutionalVisionTransformer or any wrapper that
    exposes one as ``.backbone`` (e.g. ZeroShotCvT).
    """

    def __init__(self, model: nn.Module, device: torch.device):
        """
        Args:
            model: CvT model (optionally wrapped)
            device: Device to run analysis on
        """
        backbone = model.module if hasattr(model, "module") else model
        backbone = getattr(backbone, "backbone", backbone)
        if not isinstance(backbone, ConvolutionalVisionTransformer):
            raise TypeError(f"Expected a CvT model, got {type(backbone).__name__}")
        self.model = backbone.to(device)
        self.device = device
        self._distances: Dict[Tuple, torch.Tensor] = {}

    def distance_matrix(self, attn: nn.Module, h: int, w: int, pixel_stride: float) -> torch.Tensor:
        """Pixel distances between query and key cells of ``attn`` on an ``h x w`` token map.

        Returns:
            Tensor of shape (num_queries, num_keys)
        """
        q_grid, kv_grid = attn.q_grid(h, w), attn.kv_grid(h, w)
        q_geometry, kv_geometry = _projection_geometry(attn, "q"), _projection_geometry(attn, "kv")
        key = (q_grid, kv_grid, q_geometry, kv_geometry, pixel_stride)
        if key not in self._distances:
            q = _grid_coords(q_grid, q_geometry, pixel_stride, self.device)
            k = _grid_coords(kv_grid, kv_geometry, pixel_stride, self.device)
            self._distances[key] = torch.cdist(q, k)
        return self._distances[key]

    @torch.no_grad()
    def compute_batch_statistics(self, images: torch.Tensor) -> Dict[Tuple[int, int], Dict[str, torch.Tensor]]:
        """Per-head statistics for one batch.

        Returns:
            Dict mapping (stage, block) to ``mean_distance`` and ``entropy``
            tensors of shape (num_heads,)
        """
        self.model.eval()
        x = images.to(self.device)
        stats: Dict[Tuple[int, int], Dict[str, torch.Tensor]] = {}
        input_stride = 1.0

        for stage_idx, stage in enumerate(self.model.stages):
            out = stage(x, return_attention=True)
            h, w = out.feature_map.shape[-2:]
            stride = input_stride * stage.patch_embed.stride
            offset = 1 if stage.cls_token is not None else 0

            for block_idx, (block, attn) in enumerate(zip(stage.blocks, out.attentions)):
                patch_attn = attn[:, :, offset:, offset:]
                patch_attn = patch_attn / patch_attn.sum(dim=-1, keepdim=True).clamp_min(1e-12)

                distance = self.distance_matrix(block.attn, h, w, stride)
                mean_distance = (patch_attn * distance).sum(dim=-1).mean(dim=(0, 2))
                entropy = -(patch_attn * patch_attn.clamp_min(1e-12).log()).sum(dim=-1).mean(dim=(0, 2))

                stats[(stage_idx, block_idx)] = {
                    "mean_distance": mean_distance.cpu(),
                    "entropy": entropy.cpu(),
                }

            x = out.feature_map
            input_stride = stride

        return stats

    def analyze(self, data_loader: DataLoader, num_batches: int = 10) -> Dict[str, Dict[str, list]]:
        """Average statistics over ``num_batches`` batches.

        Returns:
            Dict keyed by ``"stage{i}.block{j}"`` with per-head lists
        """
        sums: Dict[Tuple[int, int], Dict[str, torch.Tensor]] = defaultdict(dict)
        seen = 0
        for images, _ in data_loader:
            batch_stats = self.compute_batch_statistics(images)
            for key, values in batch_stats.items():
                for name, value in values.items():
                    sums[key][name] = sums[key].get(name, 0) + value
            seen += 1
            if seen >= num_batches:
                break

        if seen == 0:
            raise ValueError("Loader produced no batches")

        results = {
            f"stage{stage}.block{block}": {name: (value / seen).tolist() for name, value in values.items()}
            for (stage, block), values in sorted(sums.items())
        }
        logger.info(f"Attention statistics over {seen} batches for {len(results)} blocks")
        return results
