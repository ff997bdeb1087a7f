"""Datasets, transforms, class semantics and seen/unseen splits."""

from cvt_zsl.data.datasets import (
    FolderDataset,
    HFDataset,
    ZSLLoaders,
    build_dataset,
    create_dataloaders,
    create_zsl_dataloaders,
    get_dataset_info,
    load_zsl_split,
)
from cvt_zsl.data.semantics import align_semantics, load_class_names, load_class_semantics
from cvt_zsl.data.splits import ClassSplit, make_class_split
from cvt_zsl.data.transforms import build_eval_transform, build_train_transform

__all__ = [
    "FolderDataset",
    "HFDataset",
    "ZSLLoaders",
    "build_dataset",
    "create_dataloaders",
    "create_zsl_dataloaders",
    "get_dataset_info",
    "load_zsl_split",
    "align_semantics",
    "load_class_names",
    "load_class_semantics",
    "ClassSplit",
    "make_class_split",
    "build_eval_transform",
    "build_train_transform",
]
