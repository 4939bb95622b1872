"""Tests for the LabelMe patch dataset on small synthetic directories."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import torch

from conftest import write_labelme_sample
from nanoseq.config import LabelMeConfig
from nanoseq.data import LabelMeDataset
from nanoseq.data import create_dataloader
from nanoseq.data import extract_tags
from nanoseq.data import mask_to_classes
from nanoseq.data import scan_labelme_dir
from nanoseq.data.labelme import TAG_BYTES
from nanoseq.data.labelme import estimate_tag_memory_mb


PATCH = 4


def _two_class_mask(height: int = 12, width: int = 12) -> np.ndarray:
    """Left half class 0, right half class 1."""
    classes = np.zeros((height, width), dtype=np.int64)
    classes[:, width // 2:] = 1
    return classes


@pytest.fixture()
def labelme_root(tmp_path: Path) -> Path:
    root = tmp_path / "labelme"
    write_labelme_sample(root, "set_a", "img0", _two_class_mask(), nb_classes=2)
    write_labelme_sample(root, "set_a", "img1", _two_class_mask(), nb_classes=2)
    write_labelme_sample(root, "set_b", "img2", np.zeros((12, 12), dtype=np.int64), nb_classes=2)
    return root


def _config(root: Path, **overrides) -> LabelMeConfig:
    values = dict(
        path=str(root),
        nb_classes=2,
        class_names=["sky", "ground"],
        patch_size=PATCH,
        nb_patch_per_sample=5,
        seed=0,
    )
    values.update(overrides)
    return LabelMeConfig(**values)


# =============================================================================
# Helpers
# =============================================================================

def test_mask_to_classes_rounds_gray_levels() -> None:
    mask = torch.tensor([[0.0, 128 / 255], [1.0, 0.49]])
    classes = mask_to_classes(mask, nb_classes=3)
    assert classes.dtype == torch.uint8
    assert classes.tolist() == [[0, 1], [2, 1]]


def test_extract_tags_respects_patch_borders() -> None:
    classes = torch.zeros(6, 6, dtype=torch.uint8)
    classes[3, 2] = 1
    classes[0, 0] = 1

    tags = extract_tags(classes, nb_classes=2, patch_size=PATCH, raw_index=7)

    # centers must lie in [2, 4] on both axes
    assert tags[0].shape == (8, 3)
    assert tags[1].tolist() == [[2, 3, 7]]
    assert tags[0][:, :2].min().item() >= 2
    assert tags[0][:, :2].max().item() <= 4


def test_extract_tags_on_image_smaller_than_patch() -> None:
    tags = extract_tags(torch.zeros(2, 2, dtype=torch.uint8), nb_classes=3, patch_size=PATCH, raw_index=0)
    assert [t.shape for t in tags] == [(0, 3)] * 3


def test_scan_is_sorted_and_probes_sizes(labelme_root: Path) -> None:
    samples = scan_labelme_dir(labelme_root)

    assert [s.image_file.stem for s in samples] == ["img0", "img1", "img2"]
    assert samples[0].mask_file == labelme_root / "Masks" / "set_a" / "img0.png"
    assert samples[2].annotation_file.exists()
    assert (samples[0].channels, samples[0].height, samples[0].width) == (3, 12, 12)


def test_scan_requires_images_dir(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="images directory"):
        scan_labelme_dir(tmp_path)


# =============================================================================
# Dataset construction
# =============================================================================

def test_dataset_builds_tag_index(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root))

    assert len(dataset) == 15
    assert dataset.nb_raw_samples == 3
    # 9x9 valid centers per 12x12 image; image 2 is all class 0
    total = sum(t.size(0) for t in dataset.tags)
    assert total == 3 * 81
    assert set(dataset.tags[1][:, 2].tolist()) == {0, 1}
    assert dataset.class_names == ["sky", "ground"]


def test_missing_root_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        LabelMeDataset(_config(tmp_path / "nowhere"))


def test_nb_raw_samples_limits_images(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root, nb_raw_samples=1))
    assert len(dataset) == 5
    assert set(torch.cat(dataset.tags)[:, 2].tolist()) == {0}

    with pytest.raises(ValueError, match="only 3 images"):
        LabelMeDataset(_config(labelme_root, nb_raw_samples=4))


def test_all_classes_skipped_raises(tmp_path: Path) -> None:
    root = tmp_path / "flat"
    write_labelme_sample(root, "s", "a", np.zeros((8, 8), dtype=np.int64), nb_classes=2)
    with pytest.raises(ValueError, match="No labeled pixel"):
        LabelMeDataset(_config(root, class_to_skip=0))


# =============================================================================
# Sampling
# =============================================================================

def test_pixelwise_patch_is_centered_on_its_class(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root, label_type="pixelwise"))

    for index in range(len(dataset)):
        sample = dataset[index]
        assert sample["patch"].shape == (3, PATCH, PATCH)
        assert sample["target"].shape == (PATCH, PATCH)
        assert sample["target"].dtype == torch.uint8
        assert 0.0 <= dataset.current_x < 1.0
        assert 0.0 <= dataset.current_y < 1.0


def test_center_label_is_plus_minus_one(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root, sampling_mode="equal"))

    for index in range(4):
        target = dataset[index]["target"]
        expected = torch.full((2,), -1.0)
        expected[index % 2] = 1.0
        assert torch.equal(target, expected)


def test_equal_sampling_alternates_classes(labelme_root: Path) -> None:
    seen = []

    def center_class(ds, full_sample, full_mask, patch, patch_mask, class_id, *rest):
        seen.append(class_id)
        return int(patch_mask[PATCH // 2, PATCH // 2])

    dataset = LabelMeDataset(
        _config(labelme_root, sampling_mode="equal", label_generator=center_class)
    )
    labels = [dataset[i] for i in range(6)]

    assert seen == [0, 1, 0, 1, 0, 1]
    assert labels == seen


def test_class_to_skip_excludes_class(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root, class_to_skip=0, label_type="pixelwise"))

    for index in range(len(dataset)):
        assert dataset[index]["target"][PATCH // 2, PATCH // 2].item() == 1
    assert "unused class : sky" in dataset.describe()


def test_random_sampling_is_seeded(labelme_root: Path) -> None:
    first = LabelMeDataset(_config(labelme_root))
    second = LabelMeDataset(_config(labelme_root))

    for index in range(5):
        first[index]
        second[index]
        assert (first.current_x, first.current_y) == (second.current_x, second.current_y)


def test_index_out_of_range(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root))
    with pytest.raises(IndexError):
        dataset[len(dataset)]
    with pytest.raises(IndexError):
        dataset[-1]

    infinite = LabelMeDataset(_config(labelme_root, infinite_set=True))
    assert infinite[10 * len(infinite)]["patch"].shape == (3, PATCH, PATCH)
    assert "infinite set" in infinite.describe()


def test_dataloader_batches_patches(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root))
    loader = create_dataloader(dataset, batch_size=4, shuffle=False, drop_last=True)

    batch = next(iter(loader))
    assert batch["patch"].shape == (4, 3, PATCH, PATCH)
    assert batch["target"].shape == (4, 2)

    with pytest.raises(ValueError, match="batch_size"):
        create_dataloader(dataset, batch_size=0)


# =============================================================================
# Resizing, caching, preloading
# =============================================================================

def test_resize_to_fit_max_size(tmp_path: Path) -> None:
    root = tmp_path / "wide"
    write_labelme_sample(root, "s", "a", _two_class_mask(12, 16), nb_classes=2)
    dataset = LabelMeDataset(_config(root, raw_sample_max_size=8))

    dataset.load_sample(0)
    assert dataset.current_sample.shape == (3, 6, 8)
    assert dataset.current_mask.shape == (6, 8)
    assert set(dataset.current_mask.unique().tolist()) == {0, 1}


def test_resize_to_imposed_size(labelme_root: Path) -> None:
    dataset = LabelMeDataset(_config(labelme_root, raw_sample_size=(10, 6)))

    dataset.load_sample(1)
    assert dataset.current_sample.shape == (3, 6, 10)
    assert "imposed ratio of 10x6" in dataset.describe()


def test_tags_cache_round_trip(labelme_root: Path) -> None:
    first = LabelMeDataset(_config(labelme_root, cache_file="cache"))
    assert (labelme_root / "cache-tags").exists()

    second = LabelMeDataset(_config(labelme_root, cache_file="cache"))
    assert all(torch.equal(a, b) for a, b in zip(first.tags, second.tags))

    with pytest.raises(ValueError, match="holds 2 classes"):
        LabelMeDataset(_config(labelme_root, cache_file="cache", nb_classes=3))


def test_preload_matches_decoded_samples(labelme_root: Path) -> None:
    plain = LabelMeDataset(_config(labelme_root))
    plain.load_sample(2)
    decoded = plain.current_sample.clone()

    preloaded = LabelMeDataset(_config(labelme_root, preload_samples=True, cache_file="cache"))
    assert (labelme_root / "cache-samples").exists()
    preloaded.load_sample(2)
    assert torch.allclose(preloaded.current_sample, decoded, atol=1.0 / 255)

    reloaded = LabelMeDataset(_config(labelme_root, preload_samples=True, cache_file="cache"))
    assert reloaded.preloaded["samples"][0].dtype == torch.uint8
    assert torch.equal(reloaded.preloaded["masks"][0], preloaded.preloaded["masks"][0])


def test_tags_cache_from_larger_scan_is_rejected(labelme_root: Path) -> None:
    LabelMeDataset(_config(labelme_root, cache_file="cache"))

    with pytest.raises(ValueError, match="beyond nb_raw_samples=1"):
        LabelMeDataset(_config(labelme_root, cache_file="cache", nb_raw_samples=1))


def test_tag_memory_estimate() -> None:
    assert TAG_BYTES == 24
    # 1024 x 1024 usable pixels, 24 bytes each
    assert estimate_tag_memory_mb(1, 1024) == 24
    assert estimate_tag_memory_mb(3, 12) == 1
