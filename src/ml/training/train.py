# ml/training/train.py
"""
Train the multi-hot review classifier.

Per epoch: one pass over the training split, one evaluation pass over the
validation split. Optional callbacks driven by validation loss:
  - early stopping with restore of the best weights
  - learning-rate reduction on plateau

Saves checkpoints when --checkpoint-dir is given:
  - best by val loss: <checkpoint_dir>/best_model.pt
  - last epoch:       <checkpoint_dir>/last_model.pt
  - summary:          <checkpoint_dir>/training_summary.json

Usage:
  python -m ml.training.train --train dataset/splits/train.jsonl --val dataset/splits/val.jsonl \
      --preset dropout --epochs 20 --batch-size 512 --checkpoint-dir checkpoints/dropout
"""

import os
import copy
import argparse
import json
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
import torch
import torch.nn as nn
from torch.utils.data import DataLoader

from ml.models.dense_classifier import DenseClassifier
from ml.training.config import OPTIMIZERS, REGULARIZATION_PRESETS, TrainConfig, preset_config
from ml.training.dataloader import build_multihot_dataloaders, make_dataloader
from ml.training.metrics import compute_classification_metrics
from ml.training.sequence_datasets import MultiHotDataset


def set_seed(seed: int):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

def save_checkpoint(state: dict, path: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    torch.save(state, path)

def build_optimizer(model: nn.Module, cfg: TrainConfig) -> torch.optim.Optimizer:
    name = cfg.optimizer.lower()
    if name == "rmsprop":
        return torch.optim.RMSprop(model.parameters(), lr=cfg.lr, weight_decay=cfg.weight_decay)
    elif name == "adam":
        return torch.optim.Adam(model.parameters(), lr=cfg.lr, weight_decay=cfg.weight_decay)
    elif name == "sgd":
        return torch.optim.SGD(model.parameters(), lr=cfg.lr, weight_decay=cfg.weight_decay)
    else:
        raise ValueError(f"Unknown optimizer {cfg.optimizer!r}: choose one of {OPTIMIZERS}")

def build_scheduler(optimizer: torch.optim.Optimizer, cfg: TrainConfig):
    if cfg.reduce_lr_patience is None:
        return None
    return torch.optim.lr_scheduler.ReduceLROnPlateau(
        optimizer,
        mode="min",
        factor=cfg.reduce_lr_factor,
        patience=cfg.reduce_lr_patience,
        min_lr=cfg.min_lr,
    )

def _accuracy_count(logits: torch.Tensor, yb: torch.Tensor) -> int:
    preds = (torch.sigmoid(logits) >= 0.5).float()
    return int((preds == yb).sum().item())

def train_epoch(model, loader, criterion, optimizer, device):
    model.train()
    epoch_loss = 0.0
    correct = 0
    n_samples = 0
    for xb, yb in loader:
        xb = xb.to(device)
        yb = yb.to(device)
        optimizer.zero_grad()
        logits = model(xb)
        loss = criterion(logits, yb)
        loss.backward()
        optimizer.step()
        bsz = xb.size(0)
        epoch_loss += float(loss.item()) * bsz
        correct += _accuracy_count(logits.detach(), yb)
        n_samples += bsz
    return epoch_loss / (n_samples + 1e-12), correct / max(n_samples, 1)

def eval_epoch(model, loader, criterion, device):
    model.eval()
    epoch_loss = 0.0
    correct = 0
    y_true = []
    y_prob = []
    n_samples = 0
    with torch.no_grad():
        for xb, yb in loader:
            xb = xb.to(device)
            yb = yb.to(device)
            logits = model(xb)
            loss = criterion(logits, yb)
            bsz = xb.size(0)
            epoch_loss += float(loss.item()) * bsz
            correct += _accuracy_count(logits, yb)
            n_samples += bsz
            y_true.append(yb.cpu().numpy().reshape(-1))
            y_prob.append(torch.sigmoid(logits).cpu().numpy().reshape(-1))
    if n_samples == 0:
        raise ValueError("evaluation loader is empty")
    return (
        epoch_loss / n_samples,
        correct / n_samples,
        np.concatenate(y_true),
        np.concatenate(y_prob),
    )


@dataclass
class TrainResult:
    model: nn.Module
    history: Dict[str, List[float]]
    best_epoch: int
    best_val_loss: Optional[float]
    stopped_early: bool = False
    diverged_epoch: Optional[int] = None
    cfg: Optional[TrainConfig] = field(default=None, repr=False)

    @property
    def diverged(self) -> bool:
        return self.diverged_epoch is not None

    @property
    def best_val_acc(self) -> Optional[float]:
        # best_epoch == 0: no epoch produced a finite validation loss
        if self.best_epoch < 1:
            return None
        return self.history["val_acc"][self.best_epoch - 1]

    def summary(self) -> Dict:
        return {
            "best_val_loss": self.best_val_loss,
            "best_val_acc": self.best_val_acc,
            "best_epoch": self.best_epoch,
            "epochs_run": len(self.history["val_loss"]),
            "stopped_early": self.stopped_early,
            "diverged": self.diverged,
            "diverged_epoch": self.diverged_epoch,
            "cfg": self.cfg.to_dict() if self.cfg else None,
            "history": self.history,
        }


def json_safe(obj):
    """Replace NaN/inf floats with None so the result is strict JSON."""
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if isinstance(obj, dict):
        return {k: json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    return obj


def fit(cfg: TrainConfig, train_loader: DataLoader, val_loader: DataLoader, verbose: bool = True) -> TrainResult:
    cfg.validate()
    set_seed(cfg.seed)
    device = torch.device(cfg.device)

    model = DenseClassifier.from_config(cfg).to(device)
    optimizer = build_optimizer(model, cfg)
    scheduler = build_scheduler(optimizer, cfg)
    criterion = nn.BCEWithLogitsLoss()

    best_val_loss = None
    best_epoch = 0
    best_state = None
    no_improve = 0
    stopped_early = False
    diverged_epoch = None
    patience = cfg.early_stopping_patience

    history = {"train_loss": [], "train_acc": [], "val_loss": [], "val_acc": [], "lr": []}

    for epoch in range(1, cfg.epochs + 1):
        start_time = datetime.now()
        lr = optimizer.param_groups[0]["lr"]
        train_loss, train_acc = train_epoch(model, train_loader, criterion, optimizer, device)
        val_loss, val_acc, _, _ = eval_epoch(model, val_loader, criterion, device)

        # a non-finite loss leaves unusable weights; history keeps only finite epochs
        if not (math.isfinite(train_loss) and math.isfinite(val_loss)):
            diverged_epoch = epoch
            if verbose:
                print(f"[Epoch {epoch}] diverged: train_loss={train_loss} val_loss={val_loss}, stopping.")
            break

        history["train_loss"].append(train_loss)
        history["train_acc"].append(train_acc)
        history["val_loss"].append(val_loss)
        history["val_acc"].append(val_acc)
        history["lr"].append(lr)

        elapsed = (datetime.now() - start_time).total_seconds()
        if verbose:
            print(f"[Epoch {epoch}] train_loss={train_loss:.4f} train_acc={train_acc:.4f} "
                  f"val_loss={val_loss:.4f} val_acc={val_acc:.4f} lr={lr:.2e} time={elapsed:.1f}s")

        if cfg.checkpoint_dir:
            save_checkpoint({
                "epoch": epoch,
                "model_state_dict": model.state_dict(),
                "optimizer_state_dict": optimizer.state_dict(),
                "cfg": cfg.to_dict(),
                "history": history,
            }, os.path.join(cfg.checkpoint_dir, "last_model.pt"))

        if scheduler is not None:
            scheduler.step(val_loss)

        if best_val_loss is None or val_loss < best_val_loss - 1e-6:
            best_val_loss = val_loss
            best_epoch = epoch
            best_state = copy.deepcopy(model.state_dict())
            no_improve = 0
            if cfg.checkpoint_dir:
                best_path = os.path.join(cfg.checkpoint_dir, "best_model.pt")
                save_checkpoint({
                    "epoch": epoch,
                    "model_state_dict": best_state,
                    "cfg": cfg.to_dict(),
                }, best_path)
                if verbose:
                    print(f"  -> saved best model to {best_path}")
        else:
            no_improve += 1
            if patience is not None:
                if verbose:
                    print(f"  no improvement ({no_improve}/{patience})")
                if no_improve >= patience:
                    stopped_early = True
                    if verbose:
                        print("Early stopping triggered.")
                    break

    # early stopping and divergence both restore the best weights
    if (patience is not None or diverged_epoch is not None) and best_state is not None:
        model.load_state_dict(best_state)

    return TrainResult(
        model=model,
        history=history,
        best_epoch=best_epoch,
        best_val_loss=best_val_loss,
        stopped_early=stopped_early,
        diverged_epoch=diverged_epoch,
        cfg=cfg,
    )


def evaluate(model: nn.Module, loader: DataLoader, device="cpu", threshold: float = 0.5) -> Dict[str, float]:
    criterion = nn.BCEWithLogitsLoss()
    loss, _, y_true, y_prob = eval_epoch(model, loader, criterion, torch.device(device))
    metrics = compute_classification_metrics(y_true, y_prob, threshold=threshold)
    metrics["loss"] = loss
    return metrics


def load_model_from_checkpoint(path: str, device="cpu"):
    ckpt = torch.load(path, map_location=device)
    cfg = TrainConfig.from_dict(ckpt["cfg"])
    model = DenseClassifier.from_config(cfg)
    model.load_state_dict(ckpt["model_state_dict"])
    model.to(device)
    model.eval()
    return model, cfg


def add_config_args(parser: argparse.ArgumentParser):
    defaults = TrainConfig()
    parser.add_argument("--preset", default="baseline", choices=sorted(REGULARIZATION_PRESETS))
    parser.add_argument("--dimension", type=int, default=defaults.dimension, help="Vocabulary size / input width")
    parser.add_argument("--index-base", type=int, default=defaults.index_base,
                        help="Sequence value mapped to column 0 of the multi-hot vector")
    parser.add_argument("--hidden-units", type=str, default=None, help="e.g. 16x16")
    parser.add_argument("--dropout", type=float, default=None)
    parser.add_argument("--weight-decay", type=float, default=None)
    parser.add_argument("--optimizer", default=defaults.optimizer, choices=OPTIMIZERS)
    parser.add_argument("--lr", type=float, default=defaults.lr)
    parser.add_argument("--epochs", type=int, default=defaults.epochs)
    parser.add_argument("--batch-size", type=int, default=defaults.batch_size)
    stopping = parser.add_mutually_exclusive_group()
    stopping.add_argument("--patience", type=int, default=None, help="Early stopping patience on val loss")
    stopping.add_argument("--no-early-stopping", action="store_true", help="Disable early stopping from the preset")
    reduce_lr = parser.add_mutually_exclusive_group()
    reduce_lr.add_argument("--reduce-lr-patience", type=int, default=None)
    reduce_lr.add_argument("--no-reduce-lr", action="store_true", help="Disable LR reduction from the preset")
    parser.add_argument("--reduce-lr-factor", type=float, default=None)
    parser.add_argument("--min-lr", type=float, default=defaults.min_lr)
    parser.add_argument("--device", default=defaults.device)
    parser.add_argument("--seed", type=int, default=defaults.seed)
    parser.add_argument("--checkpoint-dir", default=None)
    parser.add_argument("--num-workers", type=int, default=0)


def config_from_args(args) -> TrainConfig:
    overrides = {
        "dimension": args.dimension,
        "index_base": args.index_base,
        "optimizer": args.optimizer,
        "lr": args.lr,
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "min_lr": args.min_lr,
        "device": args.device,
        "seed": args.seed,
        "checkpoint_dir": args.checkpoint_dir,
    }
    # only override preset values that were given explicitly
    optional = {
        "hidden_units": tuple(int(h) for h in args.hidden_units.split("x")) if args.hidden_units else None,
        "dropout": args.dropout,
        "weight_decay": args.weight_decay,
        "early_stopping_patience": args.patience,
        "reduce_lr_patience": args.reduce_lr_patience,
        "reduce_lr_factor": args.reduce_lr_factor,
    }
    overrides.update({k: v for k, v in optional.items() if v is not None})
    if args.no_early_stopping:
        overrides["early_stopping_patience"] = None
    if args.no_reduce_lr:
        overrides["reduce_lr_patience"] = None
    return preset_config(args.preset, **overrides).validate()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Train the multi-hot review classifier")
    parser.add_argument("--train", required=True, help="Training split JSONL")
    parser.add_argument("--val", required=True, help="Validation split JSONL")
    parser.add_argument("--test", default=None, help="Optional test split JSONL, evaluated with the final model")
    add_config_args(parser)
    args = parser.parse_args(argv)

    cfg = config_from_args(args)

    train_loader, val_loader = build_multihot_dataloaders(
        args.train, args.val, cfg.dimension,
        batch_size_train=cfg.batch_size,
        num_workers=args.num_workers,
        index_base=cfg.index_base,
        seed=cfg.seed,
    )

    result = fit(cfg, train_loader, val_loader)
    summary = result.summary()

    # a run that diverged before its first finite epoch has no usable weights
    if args.test and result.best_epoch > 0:
        test_ds = MultiHotDataset.from_jsonl(args.test, cfg.dimension, cfg.index_base)
        test_loader = make_dataloader(test_ds, batch_size=2048, shuffle=False, num_workers=args.num_workers)
        summary["test_metrics"] = evaluate(result.model, test_loader, device=cfg.device)
        print(f"Test metrics: {summary['test_metrics']}")

    summary = json_safe(summary)
    if cfg.checkpoint_dir:
        os.makedirs(cfg.checkpoint_dir, exist_ok=True)
        with open(os.path.join(cfg.checkpoint_dir, "training_summary.json"), "w") as fh:
            json.dump(summary, fh, indent=2, allow_nan=False)

    print("Training complete.")
    if result.best_epoch > 0:
        print(f"Best val loss: {result.best_val_loss:.6f} at epoch {result.best_epoch}")
    if result.diverged:
        print(f"Run diverged at epoch {result.diverged_epoch}")
    return summary

if __name__ == "__main__":
    main()
