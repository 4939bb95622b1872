"""DataLoader helpers for patch datasets."""

from __future__ import annotations

from typing import Optional

from torch.utils.data import DataLoader
from torch.utils.data import Dataset
from torch.utils.data import Sampler


def create_dataloader(
    dataset: Dataset,
    batch_size: int,
    shuffle: bool = True,
    sampler: Optional[Sampler] = None,
    drop_last: bool = False,
) -> DataLoader:
    """
    Create a single-process dataloader with optional sampler override.

    Patch datasets memoize the most recently decoded image, so loading stays in
    the main process (num_workers=0) where that memo is shared across samples.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    use_shuffle = bool(shuffle) and sampler is None
    return DataLoader(
        dataset,
        batch_size=batch_size,
        shuffle=use_shuffle,
        sampler=sampler,
        num_workers=0,
        drop_last=drop_last,
    )
