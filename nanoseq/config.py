"""
Configuration system for nano-seq.

Simple dataclass-based configuration, validated on construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import Literal
from typing import Optional


SamplingMode = Literal["random", "equal"]
LabelType = Literal["center", "pixelwise"]

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class LabelMeConfig:
    """
    LabelMe segmentation dataset configuration.

    The dataset root is expected to hold `Images/`, `Masks/` and `Annotations/`
    directories with one sub-folder per collection.
    """

    # Path to the LabelMe root directory
    path: str = "data/labelme"

    # Number of classes and their names (padded with "class <i>" when short)
    nb_classes: int = 1
    class_names: list[str] = field(default_factory=lambda: ["no name"])

    # Number of images to use (None = every image found)
    nb_raw_samples: Optional[int] = None

    # Resize images to fit in a MxM window, or precisely to (w, h)
    raw_sample_max_size: Optional[int] = None
    raw_sample_size: Optional[tuple[int, int]] = None

    # Patch extraction
    nb_patch_per_sample: int = 100
    patch_size: int = 64
    sampling_mode: SamplingMode = "random"
    label_type: LabelType = "center"

    # Callable generating the returned sample (bypasses label_type). Called as
    # fn(dataset, full_sample, full_mask, patch, patch_mask, class_id,
    #    ctr_x, ctr_y, box_x, box_y, box_size)
    label_generator: Optional[Callable[..., Any]] = None

    # If True, the dataset can be indexed past len(), drawing fresh patches
    infinite_set: bool = False

    # 0-based class index excluded from sampling (None = sample every class)
    class_to_skip: Optional[int] = None

    # Keep every decoded image in memory (uint8)
    preload_samples: bool = False

    # Cache file prefix inside `path`: writes <prefix>-tags and <prefix>-samples
    cache_file: Optional[str] = None

    verbose: bool = False
    seed: int = 42

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.nb_classes < 1:
            raise ValueError(f"nb_classes must be >= 1, got {self.nb_classes}")
        if self.patch_size < 1:
            raise ValueError(f"patch_size must be >= 1, got {self.patch_size}")
        if self.nb_patch_per_sample < 1:
            raise ValueError("nb_patch_per_sample must be >= 1")
        if self.nb_raw_samples is not None and self.nb_raw_samples < 1:
            raise ValueError("nb_raw_samples must be >= 1 when set")
        if self.raw_sample_max_size is not None and self.raw_sample_max_size < self.patch_size:
            raise ValueError("raw_sample_max_size must be >= patch_size")
        if self.raw_sample_size is not None:
            if len(self.raw_sample_size) != 2:
                raise ValueError("raw_sample_size must be a (width, height) pair")
            self.raw_sample_size = (int(self.raw_sample_size[0]), int(self.raw_sample_size[1]))
            if min(self.raw_sample_size) < self.patch_size:
                raise ValueError("raw_sample_size must be >= patch_size on both sides")
        if self.sampling_mode not in ("random", "equal"):
            raise ValueError(f"Unknown sampling mode: {self.sampling_mode}")
        if self.label_type not in ("center", "pixelwise"):
            raise ValueError(f"Unknown label type: {self.label_type}")
        if self.class_to_skip is not None and not 0 <= self.class_to_skip < self.nb_classes:
            raise ValueError(f"class_to_skip must be in [0, {self.nb_classes - 1}]")

        names = list(self.class_names)
        if len(names) > self.nb_classes:
            raise ValueError(
                f"Got {len(names)} class names for {self.nb_classes} classes"
            )
        names.extend(f"class {i}" for i in range(len(names), self.nb_classes))
        self.class_names = names


@dataclass
class LoggingConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    use_colors: bool = True
    log_format: Optional[str] = None

    def __post_init__(self) -> None:
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level}")


@dataclass
class Config:
    """Main configuration class."""
    data: LabelMeConfig = field(default_factory=LabelMeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    output_dir: str = "outputs"
    seed: int = 42
