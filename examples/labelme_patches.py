"""
Index a LabelMe directory and iterate over patch batches.

    python examples/labelme_patches.py /data/labelme --nb-classes 3 --patch-size 32
"""

from __future__ import annotations

import argparse
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nanoseq.config import LabelMeConfig
from nanoseq.data import LabelMeDataset
from nanoseq.data import create_dataloader
from nanoseq.logging import get_logger
from nanoseq.logging import setup_logging


setup_logging(log_level="INFO")
logger = get_logger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Sample patches from a LabelMe dataset")
    parser.add_argument("path", help="LabelMe root (holding Images/, Masks/, Annotations/)")
    parser.add_argument("--nb-classes", type=int, default=2)
    parser.add_argument("--patch-size", type=int, default=32)
    parser.add_argument("--max-size", type=int, default=None)
    parser.add_argument("--sampling-mode", choices=["random", "equal"], default="random")
    parser.add_argument("--label-type", choices=["center", "pixelwise"], default="center")
    parser.add_argument("--cache-file", default=None)
    parser.add_argument("--batch-size", type=int, default=16)
    parser.add_argument("--batches", type=int, default=3)
    args = parser.parse_args()

    config = LabelMeConfig(
        path=args.path,
        nb_classes=args.nb_classes,
        patch_size=args.patch_size,
        raw_sample_max_size=args.max_size,
        sampling_mode=args.sampling_mode,
        label_type=args.label_type,
        cache_file=args.cache_file,
        verbose=True,
    )
    dataset = LabelMeDataset(config)
    loader = create_dataloader(dataset, batch_size=args.batch_size, shuffle=False)

    for i, batch in enumerate(loader):
        if i >= args.batches:
            break
        logger.info(
            "batch %d: patch %s target %s",
            i, tuple(batch["patch"].shape), tuple(batch["target"].shape),
        )


if __name__ == "__main__":
    main()
