"""
Convolutional Vision Transformer (CvT).

Wu et al., "CvT: Introducing Convolutions to Vision Transformers", ICCV 2021.

The network is a stack of stages. Each stage tokenizes its input with an
overlapping strided convolution (ConvEmbed), then runs transformer blocks
whose q/k/v come from a depthwise convolutional projection of the token map.
Keys and values are spatially subsampled (stride_kv), queries are not.
There are no positional embeddings; the convolutions carry position.
"""

from __future__ import annotations

import math
from typing import NamedTuple

import torch
import torch.nn as nn

from cvt_zsl.config import ModelConfig, StageConfig

__all__ = [
    "ConvolutionalVisionTransformer",
    "CvTOutput",
    "CvTStage",
    "StageOutput",
    "Block",
    "ConvAttention",
    "ConvEmbed",
    "Mlp",
    "DropPath",
    "conv_output_size",
]


class CvTOutput(NamedTuple):
    logits: torch.Tensor
    features: torch.Tensor
    attention_maps: dict[tuple[int, int], torch.Tensor]


class StageOutput(NamedTuple):
    feature_map: torch.Tensor
    cls_token: torch.Tensor | None
    attentions: list[torch.Tensor]


def conv_output_size(size: int, kernel_size: int, stride: int, padding: int, ceil_mode: bool = False) -> int:
    """Spatial output size of a conv / pooling layer along one axis."""
    span = size + 2 * padding - kernel_size
    steps = math.ceil(span / stride) if ceil_mode else span // stride
    out = steps + 1
    # PyTorch drops a last ceil-mode window that starts inside the right padding.
    if ceil_mode and (out - 1) * stride >= size + padding:
        out -= 1
    return out


class DropPath(nn.Module):
    def __init__(self, drop_prob: float = 0.0):
        super().__init__()
        self.drop_prob = drop_prob

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.drop_prob == 0.0 or not self.training:
            return x
        keep_prob = 1 - self.drop_prob
        shape = (x.shape[0],) + (1,) * (x.ndim - 1)
        mask = x.new_empty(shape).bernoulli_(keep_prob).div_(keep_prob)
        return x * mask


class Mlp(nn.Module):
    def __init__(self, dim: int, hidden_dim: int, drop: float = 0.0):
        super().__init__()
        self.fc1 = nn.Linear(dim, hidden_dim)
        self.act = nn.GELU()
        self.fc2 = nn.Linear(hidden_dim, dim)
        self.drop = nn.Dropout(drop)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.drop(self.fc2(self.drop(self.act(self.fc1(x)))))


class ConvEmbed(nn.Module):
    """Overlapping convolutional token embedding, normalized per token."""

    def __init__(self, patch_size: int, in_channels: int, embed_dim: int, stride: int, padding: int):
        super().__init__()
        self.patch_size = patch_size
        self.stride = stride
        self.padding = padding
        self.proj = nn.Conv2d(in_channels, embed_dim, patch_size, stride, padding)
        self.norm = nn.LayerNorm(embed_dim)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = self.proj(x)
        B, C, H, W = x.shape
        x = self.norm(x.flatten(2).transpose(1, 2))
        return x.transpose(1, 2).reshape(B, C, H, W)


def _build_projection(dim: int, kernel_size: int, stride: int, padding: int, method: str) -> nn.Module:
    if method == "dw_bn":
        return nn.Sequential(
            nn.Conv2d(dim, dim, kernel_size, stride, padding, bias=False, groups=dim),
            nn.BatchNorm2d(dim),
        )
    if method == "avg":
        return nn.AvgPool2d(kernel_size, stride, padding, ceil_mode=True)
    if method == "linear":
        return nn.Identity()
    raise ValueError(f"Unknown qkv projection method: {method}")


class ConvAttention(nn.Module):
    """Multi-head attention over a convolutional projection of the token map."""

    def __init__(
        self,
        dim_in: int,
        dim_out: int,
        num_heads: int,
        qkv_bias: bool = True,
        attn_drop: float = 0.0,
        proj_drop: float = 0.0,
        method: str = "dw_bn",
        kernel_size: int = 3,
        stride_kv: int = 2,
        stride_q: int = 1,
        padding_kv: int = 1,
        padding_q: int = 1,
        with_cls_token: bool = False,
    ):
        super().__init__()
        if dim_out % num_heads != 0:
            raise ValueError(f"dim_out {dim_out} is not divisible by num_heads {num_heads}")
        self.num_heads = num_heads
        self.dim_out = dim_out
        self.head_dim = dim_out // num_heads
        self.scale = dim_out ** -0.5
        self.with_cls_token = with_cls_token
        self.method = method
        self.kernel_size = kernel_size
        self.stride_q = stride_q
        self.stride_kv = stride_kv
        self.padding_q = padding_q
        self.padding_kv = padding_kv

        # Average pooling only applies to keys and values.
        q_method = "linear" if method == "avg" else method
        self.conv_proj_q = _build_projection(dim_in, kernel_size, stride_q, padding_q, q_method)
        self.conv_proj_k = _build_projection(dim_in, kernel_size, stride_kv, padding_kv, method)
        self.conv_proj_v = _build_projection(dim_in, kernel_size, stride_kv, padding_kv, method)

        self.proj_q = nn.Linear(dim_in, dim_out, bias=qkv_bias)
        self.proj_k = nn.Linear(dim_in, dim_out, bias=qkv_bias)
        self.proj_v = nn.Linear(dim_in, dim_out, bias=qkv_bias)

        self.attn_drop = nn.Dropout(attn_drop)
        self.proj = nn.Linear(dim_out, dim_out)
        self.proj_drop = nn.Dropout(proj_drop)

    def _grid(self, h: int, w: int, stride: int, padding: int, method: str) -> tuple[int, int]:
        if method == "linear":
            return h, w
        ceil_mode = method == "avg"
        return (
            conv_output_size(h, self.kernel_size, stride, padding, ceil_mode),
            conv_output_size(w, self.kernel_size, stride, padding, ceil_mode),
        )

    def q_grid(self, h: int, w: int) -> tuple[int, int]:
        """Query grid for an ``h x w`` token map."""
        q_method = "linear" if self.method == "avg" else self.method
        return self._grid(h, w, self.stride_q, self.padding_q, q_method)

    def kv_grid(self, h: int, w: int) -> tuple[int, int]:
        """Key/value grid for an ``h x w`` token map."""
        return self._grid(h, w, self.stride_kv, self.padding_kv, self.method)

    def _conv_project(
        self, x: torch.Tensor, h: int, w: int
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        if self.with_cls_token:
            cls_token, x = torch.split(x, [1, h * w], dim=1)

        B, _, C = x.shape
        x = x.transpose(1, 2).reshape(B, C, h, w)

        q = self.conv_proj_q(x).flatten(2).transpose(1, 2)
        k = self.conv_proj_k(x).flatten(2).transpose(1, 2)
        v = self.conv_proj_v(x).flatten(2).transpose(1, 2)

        if self.with_cls_token:
            q = torch.cat((cls_token, q), dim=1)
            k = torch.cat((cls_token, k), dim=1)
            v = torch.cat((cls_token, v), dim=1)
        return q, k, v

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        B, N, _ = x.shape
        return x.reshape(B, N, self.num_heads, self.head_dim).transpose(1, 2)

    def forward(
        self, x: torch.Tensor, h: int, w: int, return_attention: bool = False
    ) -> torch.Tensor | tuple[torch.Tensor, torch.Tensor]:
        q, k, v = self._conv_project(x, h, w)

        q = self._split_heads(self.proj_q(q))
        k = self._split_heads(self.proj_k(k))
        v = self._split_heads(self.proj_v(v))

        attn = (q @ k.transpose(-2, -1)) * self.scale
        attn = attn.softmax(dim=-1)
        attn_probs = attn
        attn = self.attn_drop(attn)

        B, _, Nq, _ = q.shape
        x = (attn @ v).transpose(1, 2).reshape(B, Nq, self.dim_out)
        x = self.proj_drop(self.proj(x))

        if return_attention:
            return x, attn_probs.detach()
        return x


class Block(nn.Module):
    def __init__(
        self,
        dim: int,
        num_heads: int,
        mlp_ratio: float = 4.0,
        qkv_bias: bool = True,
        drop: float = 0.0,
        attn_drop: float = 0.0,
        drop_path: float = 0.0,
        **attn_kwargs,
    ):
        super().__init__()
        self.norm1 = nn.LayerNorm(dim)
        self.attn = ConvAttention(dim, dim, num_heads, qkv_bias, attn_drop, drop, **attn_kwargs)
        self.drop_path = DropPath(drop_path) if drop_path > 0 else nn.Identity()
        self.norm2 = nn.LayerNorm(dim)
        self.mlp = Mlp(dim, int(dim * mlp_ratio), drop)

    def forward(
        self, x: torch.Tensor, h: int, w: int, return_attention: bool = False
    ) -> torch.Tensor | tuple[torch.Tensor, torch.Tensor]:
        attn_out = self.attn(self.norm1(x), h, w, return_attention=return_attention)
        if return_attention:
            attn_out, attn_probs = attn_out
        x = x + self.drop_path(attn_out)
        x = x + self.drop_path(self.mlp(self.norm2(x)))
        if return_attention:
            return x, attn_probs
        return x


def _init_trunc_normal(m: nn.Module) -> None:
    if isinstance(m, nn.Linear):
        nn.init.trunc_normal_(m.weight, std=0.02)
        if m.bias is not None:
            nn.init.zeros_(m.bias)
    elif isinstance(m, (nn.LayerNorm, nn.BatchNorm2d)):
        nn.init.ones_(m.weight)
        nn.init.zeros_(m.bias)


def _init_xavier(m: nn.Module) -> None:
    if isinstance(m, nn.Linear):
        nn.init.xavier_uniform_(m.weight)
        if m.bias is not None:
            nn.init.zeros_(m.bias)
    elif isinstance(m, (nn.LayerNorm, nn.BatchNorm2d)):
        nn.init.ones_(m.weight)
        nn.init.zeros_(m.bias)


_INITS = {"trunc_norm": _init_trunc_normal, "xavier": _init_xavier}


class CvTStage(nn.Module):
    """One hierarchical stage: convolutional token embedding plus blocks."""

    def __init__(self, stage: StageConfig, in_channels: int, init: str = "trunc_norm"):
        super().__init__()
        self.embed_dim = stage.embed_dim

        self.patch_embed = ConvEmbed(
            stage.patch_size, in_channels, stage.embed_dim,
            stage.patch_stride, stage.patch_padding,
        )

        if stage.with_cls_token:
            self.cls_token = nn.Parameter(torch.zeros(1, 1, stage.embed_dim))
        else:
            self.cls_token = None

        self.pos_drop = nn.Dropout(stage.drop_rate)

        dpr = torch.linspace(0, stage.drop_path_rate, stage.depth).tolist()
        self.blocks = nn.ModuleList([
            Block(
                stage.embed_dim,
                stage.num_heads,
                mlp_ratio=stage.mlp_ratio,
                qkv_bias=stage.qkv_bias,
                drop=stage.drop_rate,
                attn_drop=stage.attn_drop_rate,
                drop_path=dpr[i],
                method=stage.qkv_method,
                kernel_size=stage.kernel_qkv,
                stride_kv=stage.stride_kv,
                stride_q=stage.stride_q,
                padding_kv=stage.padding_kv,
                padding_q=stage.padding_q,
                with_cls_token=stage.with_cls_token,
            )
            for i in range(stage.depth)
        ])

        if self.cls_token is not None:
            nn.init.trunc_normal_(self.cls_token, std=0.02)
        self.apply(_INITS[init])

    def forward(self, x: torch.Tensor, return_attention: bool = False) -> StageOutput:
        x = self.patch_embed(x)
        B, C, H, W = x.shape
        x = x.flatten(2).transpose(1, 2)

        if self.cls_token is not None:
            x = torch.cat((self.cls_token.expand(B, -1, -1), x), dim=1)
        x = self.pos_drop(x)

        attentions: list[torch.Tensor] = []
        for block in self.blocks:
            if return_attention:
                x, attn = block(x, H, W, return_attention=True)
                attentions.append(attn)
            else:
                x = block(x, H, W)

        cls_token = None
        if self.cls_token is not None:
            cls_token, x = torch.split(x, [1, H * W], dim=1)

        x = x.transpose(1, 2).reshape(B, C, H, W)
        return StageOutput(feature_map=x, cls_token=cls_token, attentions=attentions)


class ConvolutionalVisionTransformer(nn.Module):
    def __init__(self, model_config: ModelConfig):
        super().__init__()
        if not model_config.stages:
            raise ValueError("ModelConfig.stages is empty")
        last = len(model_config.stages) - 1
        for i, stage in enumerate(model_config.stages):
            if stage.with_cls_token and i != last:
                raise ValueError(f"Stage {i}: only the last stage may carry a class token")

        self.num_classes = model_config.num_classes
        self.init = model_config.init

        in_channels = model_config.in_channels
        self.stages = nn.ModuleList()
        for stage in model_config.stages:
            self.stages.append(CvTStage(stage, in_channels, model_config.init))
            in_channels = stage.embed_dim

        self.embed_dim = in_channels
        self.use_cls_token = model_config.stages[-1].with_cls_token

        self.norm = nn.LayerNorm(self.embed_dim)
        self.head = self._build_head(model_config.num_classes)

    def _build_head(self, num_classes: int) -> nn.Module:
        if num_classes <= 0:
            return nn.Identity()
        head = nn.Linear(self.embed_dim, num_classes)
        nn.init.trunc_normal_(head.weight, std=0.02)
        nn.init.zeros_(head.bias)
        return head

    def reset_classifier(self, num_classes: int) -> None:
        """Replace the head; ``num_classes <= 0`` leaves a feature extractor."""
        self.num_classes = num_classes
        device = self.norm.weight.device
        self.head = self._build_head(num_classes).to(device)

    def no_weight_decay(self) -> set[str]:
        return {
            f"stages.{i}.cls_token"
            for i, stage in enumerate(self.stages)
            if stage.cls_token is not None
        }

    def _forward_stages(
        self, x: torch.Tensor, return_attention: bool = False
    ) -> tuple[torch.Tensor, dict[tuple[int, int], torch.Tensor]]:
        attention_maps: dict[tuple[int, int], torch.Tensor] = {}
        cls_token = None
        for stage_idx, stage in enumerate(self.stages):
            out = stage(x, return_attention=return_attention)
            x, cls_token = out.feature_map, out.cls_token
            for block_idx, attn in enumerate(out.attentions):
                attention_maps[(stage_idx, block_idx)] = attn

        if self.use_cls_token:
            pooled = self.norm(cls_token).squeeze(1)
        else:
            pooled = self.norm(x.flatten(2).transpose(1, 2)).mean(dim=1)
        return pooled, attention_maps

    def forward_features(self, x: torch.Tensor) -> torch.Tensor:
        features, _ = self._forward_stages(x)
        return features

    def forward(self, x: torch.Tensor, return_attention: bool = False) -> CvTOutput:
        features, attention_maps = self._forward_stages(x, return_attention)
        return CvTOutput(
            logits=self.head(features),
            features=features,
            attention_maps=attention_maps,
        )
