"""
Class semantic vectors (attributes, word embeddings) and class-name lists.

Attribute files in the usual ZSL benchmark releases (AwA2, CUB, SUN) are
plain whitespace-delimited matrices with one row per class, and class lists
are one name per line, optionally prefixed by a 1-based index column
(``"1 antelope"``). Dotted prefixes such as CUB's ``"001.Black_footed_Albatross"``
are part of the folder name and are kept.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Sequence

import numpy as np
import torch
import torch.nn.functional as F

logger = logging.getLogger(__name__)

__all__ = ["load_class_semantics", "load_class_names", "align_semantics"]

_INDEX_PREFIX = re.compile(r"^\s*\d+\s+")


def load_class_semantics(path: str | Path, normalize: bool = True) -> torch.Tensor:
    """Load a ``(num_classes, semantic_dim)`` matrix from .npy, .pt or text.

    Args:
        path: Matrix file
        normalize: L2-normalize each class row

    Returns:
        float32 tensor
    """
    path = Path(path)
    if path.suffix == ".npy":
        matrix = torch.from_numpy(np.load(path))
    elif path.suffix in (".pt", ".pth"):
        matrix = torch.load(path, map_location="cpu", weights_only=True)
    else:
        matrix = torch.from_numpy(np.loadtxt(path, ndmin=2))

    matrix = matrix.float()
    if matrix.ndim != 2:
        raise ValueError(f"Class semantics in {path} must be 2-D, got shape {tuple(matrix.shape)}")
    if not torch.isfinite(matrix).all():
        raise ValueError(f"Class semantics in {path} contain non-finite values")

    if normalize:
        matrix = F.normalize(matrix, dim=1)

    logger.info(f"Loaded class semantics {tuple(matrix.shape)} from {path}")
    return matrix


def load_class_names(path: str | Path) -> list[str]:
    """Read one class name per line, dropping any leading index."""
    names = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line:
                names.append(_INDEX_PREFIX.sub("", line))
    return names


def align_semantics(
    semantics: torch.Tensor,
    semantic_class_names: Sequence[str],
    dataset_class_names: Sequence[str],
) -> torch.Tensor:
    """Reorder semantic rows to follow the dataset's class order."""
    if len(semantic_class_names) != semantics.shape[0]:
        raise ValueError(
            f"{len(semantic_class_names)} class names for {semantics.shape[0]} semantic rows"
        )
    row_of = {name: i for i, name in enumerate(semantic_class_names)}
    missing = [name for name in dataset_class_names if name not in row_of]
    if missing:
        raise ValueError(f"No semantic vector for classes: {missing[:10]}")
    return semantics[[row_of[name] for name in dataset_class_names]]
