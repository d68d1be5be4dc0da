# ml/training/sequence_datasets.py

import json
from typing import List, Tuple

import numpy as np
import torch
from torch.utils.data import Dataset

from data_pipeline.preprocessing.vectorize import vectorize_labels, vectorize_sequences


LABEL_MAP = {
    "neg": 0,
    "pos": 1,
    0: 0,
    1: 1,
}


def load_sequences(jsonl_path: str) -> Tuple[List[List[int]], List[int]]:
    """
    Expected JSONL format per row:
    {
        "id": "...",
        "sequence": [1, 14, 22, ...],
        "label": 0 | 1 | "neg" | "pos"
    }
    """
    sequences, labels = [], []
    with open(jsonl_path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            obj = json.loads(line)

            label = obj["label"]
            if label not in LABEL_MAP:
                raise ValueError(f"{jsonl_path}:{lineno}: unknown label {label!r}")

            sequences.append(obj["sequence"])
            labels.append(LABEL_MAP[label])
    return sequences, labels


class MultiHotDataset(Dataset):
    """
    Multi-hot review vectors with binary labels.

    x: float tensor (dimension,)
    y: float tensor (1,)
    """

    def __init__(self, features: np.ndarray, labels: np.ndarray):
        features = np.asarray(features, dtype=np.float32)
        labels = np.asarray(labels, dtype=np.float32).reshape(-1, 1)
        if features.ndim != 2:
            raise ValueError(f"features must be 2-D, got shape {features.shape}")
        if len(features) != len(labels):
            raise ValueError(f"features/labels length mismatch: {len(features)} != {len(labels)}")
        self.features = torch.from_numpy(features)
        self.labels = torch.from_numpy(labels)

    @classmethod
    def from_sequences(cls, sequences, labels, dimension: int, index_base: int = 1) -> "MultiHotDataset":
        return cls(vectorize_sequences(sequences, dimension, index_base), vectorize_labels(labels))

    @classmethod
    def from_jsonl(cls, jsonl_path: str, dimension: int, index_base: int = 1) -> "MultiHotDataset":
        sequences, labels = load_sequences(jsonl_path)
        return cls.from_sequences(sequences, labels, dimension, index_base)

    @property
    def dimension(self) -> int:
        return self.features.shape[1]

    def __len__(self):
        return len(self.labels)

    def __getitem__(self, idx):
        return self.features[idx], self.labels[idx]
