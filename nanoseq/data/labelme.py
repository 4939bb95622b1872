"""
LabelMe segmentation dataset: patches around labeled pixels.

Directory layout (one sub-folder per collection):

    <path>/Images/<folder>/<name>.jpg        RGB image
    <path>/Masks/<folder>/<name>.png         class mask, gray levels spread over [0, 255]
    <path>/Annotations/<folder>/<name>.xml   LabelMe polygons (paths recorded, not parsed)

On construction every mask is scanned once to build a per-class index of "tags":
the (x, y, image) position of every pixel whose centered patch fits inside the
image. Samples are then drawn from that index:

    class c  (random: proportional to its tag count, equal: round robin)
      -> tag (x, y, i)
      -> patch = image_i[:, y - p/2 : y + p/2, x - p/2 : x + p/2]

The index and (optionally) the decoded images can be cached next to the data
with `cache_file`; delete the cache files to force a new scan.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import Optional
from typing import TypedDict

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image
from torch.utils.data import Dataset
from tqdm import tqdm

from nanoseq.config import LabelMeConfig
from nanoseq.logging import get_logger


logger = get_logger(__name__)

IMAGES_DIR = "Images"
MASKS_DIR = "Masks"
ANNOTATIONS_DIR = "Annotations"
CACHE_FORMAT_VERSION = 1
TAG_BYTES = 3 * 8
IMAGE_SUFFIXES = (".jpg", ".jpeg")


class PatchSample(TypedDict):
    patch: torch.Tensor
    target: Any


@dataclass
class RawSample:
    """One image found on disk, with its companion mask and annotation paths."""
    image_file: Path
    mask_file: Path
    annotation_file: Path
    channels: int
    height: int
    width: int


def scan_labelme_dir(root: Path) -> list[RawSample]:
    """List every image under <root>/Images in sorted order, probing sizes without decoding."""
    images_dir = root / IMAGES_DIR
    if not images_dir.is_dir():
        raise FileNotFoundError(f"LabelMe images directory not found: {images_dir}")

    samples: list[RawSample] = []
    for folder in sorted(p for p in images_dir.iterdir() if p.is_dir()):
        for image_file in sorted(folder.iterdir()):
            if image_file.suffix.lower() not in IMAGE_SUFFIXES:
                continue
            with Image.open(image_file) as img:
                width, height = img.size
                channels = len(img.getbands())
            samples.append(
                RawSample(
                    image_file=image_file,
                    mask_file=root / MASKS_DIR / folder.name / f"{image_file.stem}.png",
                    annotation_file=root / ANNOTATIONS_DIR / folder.name / f"{image_file.stem}.xml",
                    channels=channels,
                    height=height,
                    width=width,
                )
            )
    return samples


def mask_to_classes(mask: torch.Tensor, nb_classes: int) -> torch.Tensor:
    """Map gray levels in [0, 1] to 0-based class ids: floor(m * (n - 1) + 0.5)."""
    return torch.floor(mask * (nb_classes - 1) + 0.5).clamp_(0, nb_classes - 1).to(torch.uint8)


def extract_tags(
    classes: torch.Tensor,
    nb_classes: int,
    patch_size: int,
    raw_index: int,
) -> list[torch.Tensor]:
    """
    Per-class (k, 3) int64 tensors of (x, y, raw_index) for every pixel of a class
    mask whose centered patch lies fully inside the mask.
    """
    height, width = classes.shape
    lo = patch_size // 2
    x_end = width - math.ceil(patch_size / 2)
    y_end = height - math.ceil(patch_size / 2)
    tags: list[torch.Tensor] = []
    if x_end < lo or y_end < lo:
        return [torch.empty(0, 3, dtype=torch.long) for _ in range(nb_classes)]
    region = classes[lo:y_end + 1, lo:x_end + 1]
    for class_id in range(nb_classes):
        ys, xs = torch.nonzero(region == class_id, as_tuple=True)
        tags.append(
            torch.stack(
                [xs.long() + lo, ys.long() + lo, torch.full_like(xs, raw_index, dtype=torch.long)],
                dim=1,
            )
        )
    return tags


def estimate_tag_memory_mb(nb_raw_samples: int, max_size: int) -> int:
    """Upper bound, in MB, of the tag index when every pixel of every image is usable."""
    return math.ceil(nb_raw_samples * max_size ** 2 * TAG_BYTES / 1024 / 1024)


def _fit_size(width: int, height: int, max_size: int) -> tuple[int, int]:
    if width >= height:
        return max_size, (max_size * height) // width
    return (max_size * width) // height, max_size


class LabelMeDataset(Dataset):
    """Patch dataset over a LabelMe directory (see module docstring)."""

    def __init__(self, config: LabelMeConfig) -> None:
        self.config = config
        self.path = Path(config.path)
        if not self.path.exists():
            raise FileNotFoundError(f"LabelMe directory not found: {config.path}")

        self.nb_classes = config.nb_classes
        self.class_names = list(config.class_names)
        self.patch_size = config.patch_size
        self.sampling_mode = config.sampling_mode
        self.label_type = config.label_type
        self.label_generator = config.label_generator
        self.class_to_skip = config.class_to_skip
        self.cache_file = config.cache_file
        self._rng = np.random.default_rng(config.seed)

        # Memoized most recent sample
        self.current_index = -1
        self.current_sample: Optional[torch.Tensor] = None
        self.current_mask: Optional[torch.Tensor] = None
        # Location of the last patch, relative to its image size
        self.current_x = 0.0
        self.current_y = 0.0

        logger.info("Loading LabelMe dataset from %s", self.path)
        self.raw_data = scan_labelme_dir(self.path)
        if not self.raw_data:
            raise ValueError(f"No images found under {self.path / IMAGES_DIR}")

        self.nb_raw_samples = config.nb_raw_samples or len(self.raw_data)
        if self.nb_raw_samples > len(self.raw_data):
            raise ValueError(
                f"nb_raw_samples={self.nb_raw_samples} but only {len(self.raw_data)} images found"
            )
        used = self.raw_data[:self.nb_raw_samples]
        self.max_x = max(raw.width for raw in used)
        self.max_y = max(raw.height for raw in used)
        self.nb_samples = config.nb_patch_per_sample * self.nb_raw_samples

        self.raw_sample_size = config.raw_sample_size
        max_xy = max(self.max_x, self.max_y)
        if config.raw_sample_max_size is not None:
            self.raw_sample_max_size = config.raw_sample_max_size
        elif self.raw_sample_size is not None:
            self.raw_sample_max_size = max(self.raw_sample_size)
        else:
            self.raw_sample_max_size = max_xy
        self.raw_sample_max_size = min(self.raw_sample_max_size, max_xy)

        if config.verbose:
            logger.info("\n%s", self.describe())

        self.preloaded: Optional[dict[str, list[torch.Tensor]]] = None
        self.tags: list[torch.Tensor] = []
        self.parse_all_masks()
        self._build_sampling_tables()

        if config.preload_samples:
            self.preload()

    # ---- sizes / description ----

    def __len__(self) -> int:
        return self.nb_samples

    def _cache_path(self, kind: str) -> Optional[Path]:
        if not self.cache_file:
            return None
        return self.path / f"{self.cache_file}-{kind}"

    def describe(self) -> str:
        lines = ["LabelMeDataset:", f"  + path : {self.path}"]
        if self.cache_file:
            lines.append(f"  + cache files : [path]/{self.cache_file}-[tags|samples]")
        lines.append(f"  + nb samples : {self.nb_raw_samples}")
        lines.append(f"  + nb generated patches : {self.nb_samples}")
        if self.config.infinite_set:
            lines.append("  + infinite set (actual nb of samples >> len(set))")
        lines.append(
            f"  + samples are resized to fit in a {self.raw_sample_max_size}x{self.raw_sample_max_size} "
            f"tensor [max raw size = {self.max_x}x{self.max_y}]"
        )
        if self.raw_sample_size is not None:
            lines.append(f"  + imposed ratio of {self.raw_sample_size[0]}x{self.raw_sample_size[1]}")
        lines.append(f"  + patches size : {self.patch_size}x{self.patch_size}")
        if self.class_to_skip is not None:
            lines.append(f"  + unused class : {self.class_names[self.class_to_skip]}")
        lines.append(f"  + sampling mode : {self.sampling_mode}")
        if self.label_generator is None:
            lines.append(f"  + label type : {self.label_type}")
        else:
            lines.append("  + label type : generated by user function")
        lines.append(f"  + {self.nb_classes} categories : {' | '.join(self.class_names)}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.describe()

    # ---- loading ----

    def _decode(self, raw: RawSample) -> tuple[torch.Tensor, torch.Tensor]:
        with Image.open(raw.image_file) as img:
            image = torch.from_numpy(np.array(img.convert("RGB"), dtype=np.float32))
        with Image.open(raw.mask_file) as img:
            band = img.getchannel(0) if len(img.getbands()) > 1 else img
            mask = torch.from_numpy(np.array(band, dtype=np.float32))
        return image.permute(2, 0, 1).div_(255.0), mask.div_(255.0)

    def _target_size(self, height: int, width: int) -> Optional[tuple[int, int]]:
        """(height, width) to resize to, or None to keep the raw size."""
        if self.raw_sample_size is not None:
            w, h = self.raw_sample_size
            return h, w
        if self.raw_sample_max_size < width or self.raw_sample_max_size < height:
            w, h = _fit_size(width, height, self.raw_sample_max_size)
            return h, w
        return None

    def load_sample(self, index: int) -> None:
        """Decode (or fetch from the preload) image `index` into current_sample/current_mask."""
        if index == self.current_index:
            return
        if self.preloaded is not None:
            self.current_sample = self.preloaded["samples"][index].float().div_(255.0)
            self.current_mask = self.preloaded["masks"][index].clone()
            self.current_index = index
            return

        image, mask = self._decode(self.raw_data[index])
        size = self._target_size(image.size(1), image.size(2))
        if size is not None:
            image = F.interpolate(image.unsqueeze(0), size=size, mode="bilinear", align_corners=False)[0]
            mask = F.interpolate(mask[None, None], size=size, mode="nearest")[0, 0]
        self.current_sample = image
        self.current_mask = mask_to_classes(mask, self.nb_classes)
        self.current_index = index

    def preload(self, save_file: Optional[str] = None) -> None:
        """Keep every decoded image and class mask in memory as uint8, optionally cached."""
        if save_file:
            self.cache_file = save_file
        cache_path = self._cache_path("samples")
        if cache_path is not None and cache_path.exists():
            logger.info("Retrieving saved samples from %s [delete file to force new scan]", cache_path)
            payload = torch.load(cache_path, map_location="cpu")
            if payload.get("format_version") != CACHE_FORMAT_VERSION:
                raise ValueError(f"Unsupported samples cache format in {cache_path}")
            self.preloaded = {"samples": payload["samples"], "masks": payload["masks"]}
            self.current_index = -1
            return

        logger.info("Preloading all images")
        samples: list[torch.Tensor] = []
        masks: list[torch.Tensor] = []
        for i in tqdm(range(self.nb_raw_samples), desc="Preloading images"):
            self.load_sample(i)
            samples.append(self.current_sample.mul(255.0).round_().to(torch.uint8))
            masks.append(self.current_mask.clone())
        self.preloaded = {"samples": samples, "masks": masks}
        self.current_index = -1

        if cache_path is not None:
            logger.info("Saving samples to cache file: %s", cache_path)
            torch.save({"format_version": CACHE_FORMAT_VERSION, "samples": samples, "masks": masks}, cache_path)

    # ---- tag index ----

    def parse_all_masks(self, save_file: Optional[str] = None) -> None:
        """Build (or load from cache) the per-class tag index over every mask."""
        if save_file:
            self.cache_file = save_file
        cache_path = self._cache_path("tags")
        if cache_path is not None and cache_path.exists():
            logger.info("Retrieving saved tags from %s [delete file to force new scan]", cache_path)
            payload = torch.load(cache_path, map_location="cpu")
            if payload.get("format_version") != CACHE_FORMAT_VERSION:
                raise ValueError(f"Unsupported tags cache format in {cache_path}")
            if len(payload["tags"]) != self.nb_classes:
                raise ValueError(
                    f"Tags cache {cache_path} holds {len(payload['tags'])} classes, expected {self.nb_classes}"
                )
            max_raw_index = max((int(found[:, 2].max()) for found in payload["tags"] if found.numel()), default=-1)
            if max_raw_index >= self.nb_raw_samples:
                raise ValueError(
                    f"Tags cache {cache_path} references images beyond nb_raw_samples={self.nb_raw_samples}; "
                    "delete it to force a new scan"
                )
            self.tags = payload["tags"]
            return

        logger.info("Parsing all masks to generate list of tags")
        logger.warning(
            "This operation could allocate up to %dMB",
            estimate_tag_memory_mb(self.nb_raw_samples, self.raw_sample_max_size),
        )
        per_class: list[list[torch.Tensor]] = [[] for _ in range(self.nb_classes)]
        for i in tqdm(range(self.nb_raw_samples), desc="Parsing masks"):
            self.load_sample(i)
            for class_id, found in enumerate(extract_tags(self.current_mask, self.nb_classes, self.patch_size, i)):
                per_class[class_id].append(found)
        self.tags = [
            torch.cat(found) if found else torch.empty(0, 3, dtype=torch.long)
            for found in per_class
        ]

        logger.info("Nb of patches extracted per category:")
        for class_id, found in enumerate(self.tags):
            logger.info("  %d - %d", class_id, found.size(0))

        if cache_path is not None:
            logger.info("Saving tags to cache file: %s", cache_path)
            torch.save({"format_version": CACHE_FORMAT_VERSION, "tags": self.tags}, cache_path)

    def _usable_classes(self) -> list[int]:
        return [
            class_id
            for class_id, found in enumerate(self.tags)
            if class_id != self.class_to_skip and found.size(0) > 0
        ]

    def _build_sampling_tables(self) -> None:
        self.usable_classes = self._usable_classes()
        if not self.usable_classes:
            raise ValueError("No labeled pixel can be sampled: every class is empty or skipped")
        counts = np.array([self.tags[c].size(0) for c in self.usable_classes], dtype=np.int64)
        self.nb_random_patches = int(counts.sum())
        self._cumulative_counts = np.cumsum(counts)

    # ---- sampling ----

    def _pick_random(self) -> tuple[int, int]:
        draw = int(self._rng.integers(self.nb_random_patches))
        slot = int(np.searchsorted(self._cumulative_counts, draw, side="right"))
        class_id = self.usable_classes[slot]
        return class_id, int(self._rng.integers(self.tags[class_id].size(0)))

    def _pick_equal(self, index: int) -> tuple[int, int]:
        class_id = index % self.nb_classes
        if class_id not in self.usable_classes:
            # no sample in that class, replacing with a random usable class
            class_id = self.usable_classes[int(self._rng.integers(len(self.usable_classes)))]
        per_class = math.ceil(self.nb_samples / self.nb_classes)
        tag_index = ((index + 1) * per_class - 1) // self.nb_classes
        return class_id, tag_index % self.tags[class_id].size(0)

    def __getitem__(self, index: int) -> Any:
        if index < 0 or (index >= self.nb_samples and not self.config.infinite_set):
            raise IndexError(f"Index {index} out of range for {self.nb_samples} patches")

        if self.sampling_mode == "random":
            class_id, tag_index = self._pick_random()
        else:
            class_id, tag_index = self._pick_equal(index)

        ctr_x, ctr_y, raw_index = (int(v) for v in self.tags[class_id][tag_index])
        self.load_sample(raw_index)
        full_sample = self.current_sample
        full_mask = self.current_mask

        box_size = self.patch_size
        box_x = ctr_x - box_size // 2
        box_y = ctr_y - box_size // 2
        self.current_x = box_x / full_sample.size(2)
        self.current_y = box_y / full_sample.size(1)

        patch = full_sample[:, box_y:box_y + box_size, box_x:box_x + box_size]
        patch_mask = full_mask[box_y:box_y + box_size, box_x:box_x + box_size]

        if self.label_generator is not None:
            return self.label_generator(
                self, full_sample, full_mask, patch, patch_mask,
                class_id, ctr_x, ctr_y, box_x, box_y, box_size,
            )
        if self.label_type == "center":
            target = torch.full((self.nb_classes,), -1.0)
            target[class_id] = 1.0
        else:
            target = patch_mask
        return PatchSample(patch=patch, target=target)
