from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, NamedTuple

import numpy as np
import torch
import torch.utils.data
from datasets import ClassLabel, Image, load_dataset, load_dataset_builder
from torch.utils.data import ConcatDataset, DataLoader, Dataset
from torch.utils.data.distributed import DistributedSampler
from torchvision.datasets import ImageFolder
from torchvision.datasets.folder import find_classes

from cvt_zsl.config import ExperimentConfig
from cvt_zsl.data.semantics import align_semantics, load_class_names, load_class_semantics
from cvt_zsl.data.splits import ClassSplit, LabelSpace, make_class_split
from cvt_zsl.data.transforms import build_eval_transform, build_train_transform

logger = logging.getLogger(__name__)

__all__ = [
    "HFDataset",
    "FolderDataset",
    "ZSLLoaders",
    "get_dataset_info",
    "build_dataset",
    "create_dataloaders",
    "create_zsl_dataloaders",
    "load_zsl_split",
]


def _is_local(dataset_name: str) -> bool:
    return Path(dataset_name).is_dir()


def _detect_column_keys(features: dict) -> tuple[str, str]:
    image_key = next(name for name, feat in features.items() if isinstance(feat, Image))
    label_key = next(name for name, feat in features.items() if isinstance(feat, ClassLabel))
    return image_key, label_key


def _local_split_dir(root: str, split: str) -> Path:
    path = Path(root) / split
    if split == "val" and not path.is_dir():
        path = Path(root) / "test"
    if not path.is_dir():
        raise ValueError(f"Dataset folder {root} has no '{split}' split directory")
    return path


@lru_cache(maxsize=16)
def get_dataset_info(dataset_name: str) -> dict[str, Any]:
    """Class names and split layout of a hub dataset or a local image folder.

    Local folders follow the ImageNet layout: ``<root>/train/<class>/*`` and
    ``<root>/val/<class>/*`` (``test`` is accepted for ``val``).
    """
    if _is_local(dataset_name):
        class_names, _ = find_classes(str(_local_split_dir(dataset_name, "train")))
        return {
            "source": "folder",
            "num_classes": len(class_names),
            "class_names": class_names,
            "split_map": {"train": "train", "val": "val"},
        }

    builder = load_dataset_builder(dataset_name)
    features = builder.info.features
    available_splits = set(builder.info.splits.keys())

    image_key, label_key = _detect_column_keys(features)
    val_split_name = "validation" if "validation" in available_splits else "test"

    return {
        "source": "hub",
        "image_key": image_key,
        "label_key": label_key,
        "num_classes": features[label_key].num_classes,
        "class_names": features[label_key].names,
        "split_map": {"train": "train", "val": val_split_name},
    }


class HFDataset(torch.utils.data.Dataset):
    """Hugging Face hub dataset with optional class filtering and relabeling."""

    def __init__(
        self,
        dataset_name: str,
        split: str,
        transform: Callable | None,
        label_map: dict[int, int] | None = None,
    ):
        info = get_dataset_info(dataset_name)
        self.dataset = load_dataset(dataset_name, split=info["split_map"][split])
        self.transform = transform
        self._image_key = info["image_key"]
        self._label_key = info["label_key"]
        self.label_map = label_map

        if label_map is not None:
            labels = np.asarray(self.dataset[self._label_key])
            keep = np.flatnonzero(np.isin(labels, list(label_map)))
            self.dataset = self.dataset.select(keep)

    def __len__(self) -> int:
        return len(self.dataset)

    def __getitem__(self, idx: int):
        item = self.dataset[idx]
        image = item[self._image_key].convert("RGB")
        if self.transform is not None:
            image = self.transform(image)
        label = item[self._label_key]
        if self.label_map is not None:
            label = self.label_map[label]
        return image, label


class FolderDataset(ImageFolder):
    """``ImageFolder`` with optional class filtering and relabeling.

    ``class_names`` pins the label order so that splits missing a class
    folder keep the same indices as the training split.
    """

    def __init__(
        self,
        root: str | Path,
        transform: Callable | None,
        label_map: dict[int, int] | None = None,
        class_names: list[str] | None = None,
    ):
        self._class_names = class_names
        super().__init__(str(root), transform=transform, allow_empty=True)
        self.label_map = label_map
        if label_map is not None:
            self.samples = [(path, label_map[t]) for path, t in self.samples if t in label_map]
            self.imgs = self.samples
            self.targets = [t for _, t in self.samples]

    def find_classes(self, directory: str) -> tuple[list[str], dict[str, int]]:
        if self._class_names is None:
            return super().find_classes(directory)
        return list(self._class_names), {name: i for i, name in enumerate(self._class_names)}


def build_dataset(
    dataset_name: str,
    split: str,
    transform: Callable | None,
    label_map: dict[int, int] | None = None,
) -> Dataset:
    if _is_local(dataset_name):
        class_names = get_dataset_info(dataset_name)["class_names"]
        return FolderDataset(_local_split_dir(dataset_name, split), transform, label_map, class_names)
    return HFDataset(dataset_name, split, transform, label_map)


def _loader(
    dataset: Dataset,
    config: ExperimentConfig,
    *,
    train: bool,
    sampler: DistributedSampler | None = None,
) -> DataLoader:
    workers = config.data.num_workers
    return DataLoader(
        dataset,
        batch_size=config.data.batch_size,
        shuffle=train and sampler is None,
        sampler=sampler,
        num_workers=workers,
        pin_memory=torch.cuda.is_available(),
        persistent_workers=workers > 0,
        drop_last=train,
    )


def _train_sampler(dataset: Dataset, world_size: int, rank: int) -> DistributedSampler | None:
    if world_size <= 1:
        return None
    return DistributedSampler(dataset, num_replicas=world_size, rank=rank, shuffle=True)


def create_dataloaders(
    config: ExperimentConfig,
    world_size: int = 1,
    rank: int = 0,
) -> tuple[DataLoader, DistributedSampler | None, DataLoader]:
    """Supervised train / val loaders over every dataset class."""
    image_size = config.model.img_size
    train_transform = build_train_transform(image_size, config.data.mean, config.data.std)
    eval_transform = build_eval_transform(image_size, config.data.mean, config.data.std)

    train_dataset = build_dataset(config.data.dataset, "train", train_transform)
    val_dataset = build_dataset(config.data.dataset, "val", eval_transform)
    sampler = _train_sampler(train_dataset, world_size, rank)

    logger.info(f"Supervised data: train={len(train_dataset)} val={len(val_dataset)}")
    return (
        _loader(train_dataset, config, train=True, sampler=sampler),
        sampler,
        _loader(val_dataset, config, train=False),
    )


class ZSLLoaders(NamedTuple):
    train: DataLoader
    train_sampler: DistributedSampler | None
    test_seen: DataLoader
    test_unseen: DataLoader


def create_zsl_dataloaders(
    config: ExperimentConfig,
    split: ClassSplit,
    world_size: int = 1,
    rank: int = 0,
    *,
    test_space: LabelSpace = "all",
) -> ZSLLoaders:
    """Loaders for the seen/unseen protocol.

    Training sees only seen-class images from the ``train`` split, labeled in
    the seen space. Seen-class test images come from the held-out ``val``
    split. No unseen image is used for training, so unseen test images come
    from both splits. Test labels are in ``test_space``.
    """
    image_size = config.model.img_size
    train_transform = build_train_transform(image_size, config.data.mean, config.data.std)
    eval_transform = build_eval_transform(image_size, config.data.mean, config.data.std)
    name = config.data.dataset

    seen_map = {label: idx for label, idx in split.label_map(test_space).items() if label in split.seen}
    unseen_map = {label: idx for label, idx in split.label_map(test_space).items() if label in split.unseen}

    train_dataset = build_dataset(name, "train", train_transform, split.label_map("seen"))
    test_seen = build_dataset(name, "val", eval_transform, seen_map)
    test_unseen = ConcatDataset([
        build_dataset(name, "train", eval_transform, unseen_map),
        build_dataset(name, "val", eval_transform, unseen_map),
    ])

    logger.info(
        f"ZSL data: {len(split.seen)} seen / {len(split.unseen)} unseen classes, "
        f"train={len(train_dataset)} test_seen={len(test_seen)} test_unseen={len(test_unseen)}"
    )

    sampler = _train_sampler(train_dataset, world_size, rank)
    return ZSLLoaders(
        train=_loader(train_dataset, config, train=True, sampler=sampler),
        train_sampler=sampler,
        test_seen=_loader(test_seen, config, train=False),
        test_unseen=_loader(test_unseen, config, train=False),
    )


def load_zsl_split(config: ExperimentConfig) -> tuple[ClassSplit, torch.Tensor]:
    """Seen/unseen split and dataset-ordered class semantics for ``config``."""
    if not config.data.attributes:
        raise ValueError("data.attributes must point to a class semantic matrix")
    if not config.data.unseen_classes:
        raise ValueError("data.unseen_classes must list the unseen classes")

    class_names = list(get_dataset_info(config.data.dataset)["class_names"])
    semantics = load_class_semantics(config.data.attributes, normalize=config.zsl.normalize_attributes)
    if config.data.class_names:
        semantics = align_semantics(semantics, load_class_names(config.data.class_names), class_names)
    elif semantics.shape[0] != len(class_names):
        raise ValueError(
            f"Semantic matrix has {semantics.shape[0]} rows but the dataset has "
            f"{len(class_names)} classes; set data.class_names to align them"
        )

    split = make_class_split(class_names, config.data.unseen_classes)
    return split, semantics
