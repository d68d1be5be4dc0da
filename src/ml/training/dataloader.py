import torch
from torch.utils.data import DataLoader

from .sequence_datasets import MultiHotDataset


def make_dataloader(dataset: MultiHotDataset, batch_size: int, shuffle: bool, num_workers: int = 0, seed: int = None):
    generator = None
    if shuffle and seed is not None:
        generator = torch.Generator().manual_seed(seed)
    return DataLoader(
        dataset,
        batch_size=batch_size,
        shuffle=shuffle,
        num_workers=num_workers,
        generator=generator,
    )


def build_multihot_dataloaders(
    train_path: str,
    val_path: str,
    dimension: int,
    batch_size_train: int = 512,
    batch_size_val: int = 2048,
    num_workers: int = 0,
    index_base: int = 1,
    seed: int = None,
):
    train_ds = MultiHotDataset.from_jsonl(train_path, dimension, index_base)
    val_ds = MultiHotDataset.from_jsonl(val_path, dimension, index_base)

    train_loader = make_dataloader(train_ds, batch_size_train, shuffle=True, num_workers=num_workers, seed=seed)
    val_loader = make_dataloader(val_ds, batch_size_val, shuffle=False, num_workers=num_workers)

    return train_loader, val_loader
