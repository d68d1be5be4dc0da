# ml/models/dense_classifier.py
import torch
import torch.nn as nn
from typing import Sequence

class DenseClassifier(nn.Module):
    """
    Fully connected review classifier over multi-hot vectors.

    x:      (batch, input_dim) float 0/1
    output: (batch, 1) logits; use predict_proba for sigmoid scores

    Capacity is set by hidden_units (one Linear+ReLU per entry); dropout > 0
    inserts a Dropout after every hidden activation.
    """
    def __init__(self, input_dim: int, hidden_units: Sequence[int] = (16, 16), dropout: float = 0.0):
        super().__init__()
        hidden_units = tuple(int(h) for h in hidden_units)
        if input_dim <= 0:
            raise ValueError("input_dim must be positive")
        if not hidden_units or any(h <= 0 for h in hidden_units):
            raise ValueError(f"hidden_units must be non-empty positive widths, got {hidden_units}")
        if not 0.0 <= dropout < 1.0:
            raise ValueError(f"dropout must be in [0, 1), got {dropout}")

        self.input_dim = input_dim
        self.hidden_units = hidden_units
        self.dropout = dropout

        layers = []
        prev = input_dim
        for width in hidden_units:
            layers.append(nn.Linear(prev, width))
            layers.append(nn.ReLU())
            if dropout > 0:
                layers.append(nn.Dropout(dropout))
            prev = width
        layers.append(nn.Linear(prev, 1))
        self.net = nn.Sequential(*layers)

        # init
        for m in self.net:
            if isinstance(m, nn.Linear):
                nn.init.xavier_uniform_(m.weight)
                nn.init.constant_(m.bias, 0.0)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.net(x)

    @torch.no_grad()
    def predict_proba(self, x: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(self.forward(x))

    @staticmethod
    def from_config(cfg) -> "DenseClassifier":
        return DenseClassifier(
            input_dim=cfg.dimension,
            hidden_units=cfg.hidden_units,
            dropout=cfg.dropout,
        )
