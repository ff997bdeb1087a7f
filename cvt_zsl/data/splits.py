"""
Seen / unseen class splits.

Three label spaces are in play:

- ``"seen"``: contiguous indices over seen classes (training targets)
- ``"unseen"``: contiguous indices over unseen classes (conventional ZSL)
- ``"all"``: seen classes first, then unseen (GZSL)

Indices in every space follow the dataset's own class order.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Sequence

import torch

from cvt_zsl.data.semantics import load_class_names

__all__ = ["ClassSplit", "LabelSpace", "make_class_split"]

LabelSpace = Literal["seen", "unseen", "all"]


@dataclass(frozen=True)
class ClassSplit:
    class_names: tuple[str, ...]
    seen: tuple[int, ...]
    unseen: tuple[int, ...]

    def classes(self, space: LabelSpace) -> tuple[int, ...]:
        """Original dataset labels making up ``space``, in index order."""
        if space == "seen":
            return self.seen
        if space == "unseen":
            return self.unseen
        if space == "all":
            return self.seen + self.unseen
        raise ValueError(f"Unknown label space: {space}")

    def label_map(self, space: LabelSpace) -> dict[int, int]:
        return {label: i for i, label in enumerate(self.classes(space))}

    def seen_mask(self) -> torch.Tensor:
        """Boolean mask over the ``"all"`` space marking seen classes."""
        mask = torch.zeros(len(self.seen) + len(self.unseen), dtype=torch.bool)
        mask[: len(self.seen)] = True
        return mask

    def embeddings(self, semantics: torch.Tensor, space: LabelSpace) -> torch.Tensor:
        """Rows of a dataset-ordered semantic matrix for ``space``."""
        if semantics.shape[0] != len(self.class_names):
            raise ValueError(
                f"Semantic matrix has {semantics.shape[0]} rows for {len(self.class_names)} classes"
            )
        return semantics[list(self.classes(space))]


def make_class_split(
    class_names: Sequence[str],
    unseen: Sequence[str] | str | Path,
) -> ClassSplit:
    """Split dataset classes into seen and unseen by name.

    Args:
        class_names: All dataset class names in label order
        unseen: Unseen class names, or a file listing them one per line
    """
    if isinstance(unseen, (str, Path)):
        unseen = load_class_names(unseen)

    index_of = {name: i for i, name in enumerate(class_names)}
    unknown = [name for name in unseen if name not in index_of]
    if unknown:
        raise ValueError(f"Unknown unseen classes: {unknown[:10]}")

    unseen_set = set(unseen)
    seen_idx = tuple(i for i, name in enumerate(class_names) if name not in unseen_set)
    unseen_idx = tuple(i for i, name in enumerate(class_names) if name in unseen_set)

    if not seen_idx:
        raise ValueError("Split leaves no seen classes")
    if not unseen_idx:
        raise ValueError("Split has no unseen classes")

    return ClassSplit(class_names=tuple(class_names), seen=seen_idx, unseen=unseen_idx)
