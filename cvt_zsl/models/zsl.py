"""
Zero-shot classification on top of a CvT backbone.

Classes are described by semantic vectors (attributes or word embeddings)
rather than by rows of a classifier weight matrix, so the set of classes a
model scores over is an input, not a parameter. Training passes the seen
classes; ZSL evaluation passes the unseen classes; GZSL evaluation passes
both.
"""

from __future__ import annotations

import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from cvt_zsl.models.cvt import ConvolutionalVisionTransformer, CvTOutput

__all__ = ["SemanticEmbeddingHead", "ZeroShotCvT", "ESZSL"]


class SemanticEmbeddingHead(nn.Module):
    """Scaled cosine compatibility between image features and class vectors."""

    def __init__(self, feature_dim: int, semantic_dim: int, temperature: float = 0.05):
        super().__init__()
        self.proj = nn.Linear(feature_dim, semantic_dim)
        self.logit_scale = nn.Parameter(torch.tensor(math.log(1.0 / temperature)))
        nn.init.trunc_normal_(self.proj.weight, std=0.02)
        nn.init.zeros_(self.proj.bias)

    def forward(self, features: torch.Tensor, class_embeddings: torch.Tensor) -> torch.Tensor:
        image_embeddings = F.normalize(self.proj(features), dim=-1)
        class_embeddings = F.normalize(class_embeddings.to(image_embeddings.dtype), dim=-1)
        # Capped at 100, as in CLIP.
        scale = self.logit_scale.exp().clamp(max=100.0)
        return scale * image_embeddings @ class_embeddings.t()


class ZeroShotCvT(nn.Module):
    """CvT feature extractor followed by a semantic embedding head."""

    def __init__(
        self,
        backbone: ConvolutionalVisionTransformer,
        semantic_dim: int,
        temperature: float = 0.05,
    ):
        super().__init__()
        backbone.reset_classifier(0)
        self.backbone = backbone
        self.embed_dim = backbone.embed_dim
        self.head = SemanticEmbeddingHead(backbone.embed_dim, semantic_dim, temperature)
        self.register_buffer("class_embeddings", torch.empty(0, semantic_dim), persistent=False)

    @property
    def semantic_dim(self) -> int:
        return self.head.proj.out_features

    def set_class_embeddings(self, class_embeddings: torch.Tensor) -> None:
        """Set the default class set used when ``forward`` gets none."""
        if class_embeddings.ndim != 2 or class_embeddings.shape[1] != self.semantic_dim:
            raise ValueError(
                f"Expected class embeddings of shape (num_classes, {self.semantic_dim}), "
                f"got {tuple(class_embeddings.shape)}"
            )
        self.class_embeddings = class_embeddings.detach().to(self.class_embeddings.device)

    def no_weight_decay(self) -> set[str]:
        names = {f"backbone.{name}" for name in self.backbone.no_weight_decay()}
        names.add("head.logit_scale")
        return names

    def forward(
        self,
        x: torch.Tensor,
        class_embeddings: torch.Tensor | None = None,
        return_attention: bool = False,
    ) -> CvTOutput:
        if class_embeddings is None:
            if self.class_embeddings.numel() == 0:
                raise RuntimeError("No class embeddings given and none set via set_class_embeddings()")
            class_embeddings = self.class_embeddings

        backbone_out = self.backbone(x, return_attention=return_attention)
        logits = self.head(backbone_out.features, class_embeddings)
        return CvTOutput(
            logits=logits,
            features=backbone_out.features,
            attention_maps=backbone_out.attention_maps,
        )


class ESZSL:
    """Embarrassingly Simple Zero-Shot Learning (Romera-Paredes & Torr, 2015).

    Learns a bilinear compatibility ``x^T V s`` between frozen image features
    and class vectors in closed form:

        V = (X^T X + 10^alpha I)^-1 X^T Y S (S^T S + 10^gamma I)^-1

    with ``Y`` in {-1, 1}. Scores for any class set follow as ``X V S^T``.
    """

    def __init__(self, alpha: float = 3.0, gamma: float = 0.0):
        self.alpha = alpha
        self.gamma = gamma
        self.weights: torch.Tensor | None = None

    def fit(
        self,
        features: torch.Tensor,
        labels: torch.Tensor,
        class_embeddings: torch.Tensor,
    ) -> "ESZSL":
        X = features.double()
        S = class_embeddings.double().to(X.device)
        labels = labels.to(X.device)
        num_samples, feature_dim = X.shape
        num_classes, semantic_dim = S.shape
        if labels.numel() != num_samples:
            raise ValueError(f"Got {labels.numel()} labels for {num_samples} feature rows")
        if labels.min() < 0 or labels.max() >= num_classes:
            raise ValueError(f"Labels must lie in [0, {num_classes})")

        Y = -torch.ones(num_samples, num_classes, dtype=X.dtype, device=X.device)
        Y[torch.arange(num_samples, device=X.device), labels] = 1.0

        gram_x = X.t() @ X + (10.0 ** self.alpha) * torch.eye(feature_dim, dtype=X.dtype, device=X.device)
        gram_s = S.t() @ S + (10.0 ** self.gamma) * torch.eye(semantic_dim, dtype=X.dtype, device=X.device)

        left = torch.linalg.solve(gram_x, X.t() @ Y @ S)
        # gram_s is symmetric, so right-multiplying by its inverse is a transposed solve.
        V = torch.linalg.solve(gram_s, left.t()).t()
        self.weights = V.float()
        return self

    def predict_scores(self, features: torch.Tensor, class_embeddings: torch.Tensor) -> torch.Tensor:
        if self.weights is None:
            raise RuntimeError("ESZSL.predict_scores() called before fit()")
        V = self.weights.to(features.device)
        return features.float() @ V @ class_embeddings.float().to(features.device).t()

    def predict(self, features: torch.Tensor, class_embeddings: torch.Tensor) -> torch.Tensor:
        return self.predict_scores(features, class_embeddings).argmax(dim=1)
