"""
Pytest fixtures and shared test helpers.

Some test modules import helpers via `from conftest import ...`, so this file lives at the
repository root (which pytest adds to `sys.path`) rather than only under `tests/`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pytest
import torch
from PIL import Image


@dataclass(frozen=True)
class Tolerances:
    """Numerical tolerances for tensor comparisons."""

    RTOL: float = 1e-5
    ATOL: float = 1e-6


@pytest.fixture(params=["cpu"])
def device(request) -> torch.device:
    """Device fixture used by unit tests."""
    return torch.device(request.param)


@pytest.fixture()
def tolerances() -> Tolerances:
    """Default numerical tolerances used by accuracy tests."""
    return Tolerances()


def assert_tensor_close(
    actual: torch.Tensor,
    expected: torch.Tensor,
    rtol: float = 1e-5,
    atol: float = 1e-6,
    msg: Optional[str] = None,
) -> None:
    """
    Assert two tensors are close within tolerances.

    Args:
        actual: Tensor under test.
        expected: Reference tensor.
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        msg: Optional message prefix on failure.
    """
    if actual.shape != expected.shape:
        raise AssertionError(f"Shape mismatch: {actual.shape} vs {expected.shape}")

    if not torch.allclose(actual, expected, rtol=rtol, atol=atol):
        diff = (actual - expected).abs()
        max_diff = float(diff.max().item()) if diff.numel() > 0 else 0.0
        raise AssertionError(f"{msg or 'Tensors not close'}: max diff = {max_diff}")


def write_labelme_sample(
    root: Path,
    folder: str,
    name: str,
    classes: np.ndarray,
    nb_classes: int,
) -> None:
    """
    Write one LabelMe image/mask/annotation triple.

    `classes` is an (H, W) array of 0-based class ids; the mask stores them as
    gray levels round(c * 255 / (nb_classes - 1)), and the image encodes the
    class id in its red channel so patches can be checked against the mask.
    """
    height, width = classes.shape
    for sub in ("Images", "Masks", "Annotations"):
        (root / sub / folder).mkdir(parents=True, exist_ok=True)

    scale = 255.0 / max(nb_classes - 1, 1)
    gray = np.rint(classes.astype(np.float64) * scale).astype(np.uint8)
    Image.fromarray(gray, mode="L").save(root / "Masks" / folder / f"{name}.png")

    rgb = np.zeros((height, width, 3), dtype=np.uint8)
    rgb[..., 0] = gray
    rgb[..., 1] = 128
    # Quality 100 keeps the flat test images nearly lossless.
    Image.fromarray(rgb, mode="RGB").save(root / "Images" / folder / f"{name}.jpg", quality=100)

    (root / "Annotations" / folder / f"{name}.xml").write_text("<annotation></annotation>\n")
