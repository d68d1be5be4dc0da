# ml/training/config.py
"""
Training configuration shared by the train and sweep entry points.

A TrainConfig travels explicitly through every call (and into checkpoints via
to_dict), so no module keeps hyperparameters in globals.
"""

from dataclasses import asdict, dataclass, field, fields, replace as _replace
from typing import Dict, Optional, Tuple

import torch

OPTIMIZERS = ("rmsprop", "adam", "sgd")


@dataclass
class TrainConfig:
    dimension: int = 10000
    index_base: int = 1

    # model capacity / regularization
    hidden_units: Tuple[int, ...] = (16, 16)
    dropout: float = 0.0
    weight_decay: float = 0.0

    # optimization
    optimizer: str = "rmsprop"
    lr: float = 1e-3
    epochs: int = 20
    batch_size: int = 512

    # callbacks
    early_stopping_patience: Optional[int] = None
    reduce_lr_factor: float = 0.1
    reduce_lr_patience: Optional[int] = None
    min_lr: float = 0.0

    device: str = field(default_factory=lambda: "cuda" if torch.cuda.is_available() else "cpu")
    seed: int = 42
    checkpoint_dir: Optional[str] = None

    def __post_init__(self):
        self.hidden_units = tuple(int(h) for h in self.hidden_units)

    def validate(self) -> "TrainConfig":
        if self.dimension <= 0:
            raise ValueError("dimension must be positive")
        if not self.hidden_units or any(h <= 0 for h in self.hidden_units):
            raise ValueError(f"hidden_units must be non-empty positive widths, got {self.hidden_units}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {self.dropout}")
        if self.weight_decay < 0:
            raise ValueError("weight_decay must be >= 0")
        if self.optimizer not in OPTIMIZERS:
            raise ValueError(f"Unknown optimizer {self.optimizer!r}: choose one of {OPTIMIZERS}")
        if self.lr <= 0:
            raise ValueError("lr must be positive")
        if self.epochs <= 0 or self.batch_size <= 0:
            raise ValueError("epochs and batch_size must be positive")
        if self.early_stopping_patience is not None and self.early_stopping_patience < 1:
            raise ValueError("early_stopping_patience must be >= 1 or None")
        if self.reduce_lr_patience is not None and self.reduce_lr_patience < 0:
            raise ValueError("reduce_lr_patience must be >= 0 or None")
        if not 0.0 < self.reduce_lr_factor < 1.0:
            raise ValueError("reduce_lr_factor must be in (0, 1)")
        return self

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["hidden_units"] = list(self.hidden_units)
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> "TrainConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**d)

    def replace(self, **overrides) -> "TrainConfig":
        return _replace(self, **overrides)


# Configurations from the regularization walkthrough.
REGULARIZATION_PRESETS: Dict[str, Dict] = {
    "baseline": {"hidden_units": (16, 16)},
    "small":    {"hidden_units": (4, 4)},
    "large":    {"hidden_units": (512, 512)},
    "l2":       {"hidden_units": (16, 16), "weight_decay": 1e-3},
    "dropout":  {"hidden_units": (16, 16), "dropout": 0.5},
    "combined": {
        "hidden_units": (16, 16),
        "dropout": 0.5,
        "weight_decay": 1e-3,
        "early_stopping_patience": 3,
        "reduce_lr_patience": 1,
        "reduce_lr_factor": 0.5,
    },
}


def preset_config(name: str, **overrides) -> TrainConfig:
    if name not in REGULARIZATION_PRESETS:
        raise ValueError(f"Unknown preset {name!r}: choose one of {sorted(REGULARIZATION_PRESETS)}")
    return TrainConfig(**{**REGULARIZATION_PRESETS[name], **overrides})
