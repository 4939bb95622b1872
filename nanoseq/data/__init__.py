"""Segmentation patch datasets."""

from nanoseq.data.labelme import LabelMeDataset
from nanoseq.data.labelme import PatchSample
from nanoseq.data.labelme import extract_tags
from nanoseq.data.labelme import mask_to_classes
from nanoseq.data.labelme import scan_labelme_dir
from nanoseq.data.loader import create_dataloader

__all__ = [
    "LabelMeDataset",
    "PatchSample",
    "create_dataloader",
    "extract_tags",
    "mask_to_classes",
    "scan_labelme_dir",
]
