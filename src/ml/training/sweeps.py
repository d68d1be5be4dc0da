# ml/training/sweeps.py
"""
Hyperparameter sweeps over one regularization knob at a time.

Every value is trained `repeats` times (seed = base seed + run) on the same
train/val loaders; per-run records are summarized with mean/std/min of the
best validation loss. Runs whose loss goes non-finite are recorded as
diverged and counted separately.

Usage:
  python -m ml.training.sweeps --train dataset/splits/train.jsonl --val dataset/splits/val.jsonl \
      --param lr --values 1e-4,1e-3,1e-2 --repeats 3 --out results/lr_sweep
  python -m ml.training.sweeps ... --param hidden_units --values 4x4,16x16,64x64
"""

import argparse
import json
import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from torch.utils.data import DataLoader

from ml.training.config import TrainConfig
from ml.training.dataloader import build_multihot_dataloaders
from ml.training.train import add_config_args, config_from_args, fit, json_safe

SWEEPABLE_PARAMS = ("lr", "hidden_units", "weight_decay", "dropout")


@dataclass
class SweepRecord:
    param: str
    value: Any
    run: int
    seed: int
    best_epoch: int
    best_val_loss: Optional[float]
    best_val_acc: Optional[float]
    final_train_loss: Optional[float]
    stopped_early: bool
    diverged: bool = False


def parse_sweep_values(param: str, raw: str) -> List[Any]:
    if param not in SWEEPABLE_PARAMS:
        raise ValueError(f"Unknown sweep param {param!r}: choose one of {SWEEPABLE_PARAMS}")
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if not parts:
        raise ValueError("no sweep values given")
    if param == "hidden_units":
        return [tuple(int(h) for h in p.split("x")) for p in parts]
    return [float(p) for p in parts]


def run_sweep(
    base_cfg: TrainConfig,
    param: str,
    values: Sequence[Any],
    train_loader: DataLoader,
    val_loader: DataLoader,
    repeats: int = 1,
    verbose: bool = False,
) -> List[SweepRecord]:
    if param not in SWEEPABLE_PARAMS:
        raise ValueError(f"Unknown sweep param {param!r}: choose one of {SWEEPABLE_PARAMS}")
    if repeats < 1:
        raise ValueError("repeats must be >= 1")

    records = []
    for value in values:
        for run in range(repeats):
            seed = base_cfg.seed + run
            cfg = base_cfg.replace(**{param: value, "seed": seed, "checkpoint_dir": None})
            result = fit(cfg, train_loader, val_loader, verbose=verbose)
            rec = SweepRecord(
                param=param,
                value=cfg.hidden_units if param == "hidden_units" else value,
                run=run,
                seed=seed,
                best_epoch=result.best_epoch,
                best_val_loss=result.best_val_loss,
                best_val_acc=result.best_val_acc,
                final_train_loss=result.history["train_loss"][-1] if result.history["train_loss"] else None,
                stopped_early=result.stopped_early,
                diverged=result.diverged,
            )
            if rec.diverged:
                print(f"[SWEEP] {param}={rec.value} run={run} diverged at epoch {result.diverged_epoch}")
            else:
                print(f"[SWEEP] {param}={rec.value} run={run} best_val_loss={rec.best_val_loss:.4f} "
                      f"best_val_acc={rec.best_val_acc:.4f} best_epoch={rec.best_epoch}")
            records.append(rec)
    return records


def summarize_sweep(records: Sequence[SweepRecord]) -> List[Dict[str, Any]]:
    """
    One row per swept value. Diverged runs are counted in `diverged` and left
    out of the statistics; the statistics are None when every run diverged.
    """
    grouped: Dict[Any, List[SweepRecord]] = {}
    for rec in records:
        grouped.setdefault(rec.value, []).append(rec)

    summary = []
    for value, recs in grouped.items():
        ok = [r for r in recs if not r.diverged]
        row = {
            "param": recs[0].param,
            "value": list(value) if isinstance(value, tuple) else value,
            "runs": len(recs),
            "diverged": len(recs) - len(ok),
            "val_loss_mean": None,
            "val_loss_std": None,
            "val_loss_min": None,
            "val_acc_mean": None,
            "best_epoch_mean": None,
        }
        if ok:
            losses = np.array([r.best_val_loss for r in ok], dtype=float)
            row.update({
                "val_loss_mean": float(losses.mean()),
                "val_loss_std": float(losses.std()),
                "val_loss_min": float(losses.min()),
                "val_acc_mean": float(np.mean([r.best_val_acc for r in ok])),
                "best_epoch_mean": float(np.mean([r.best_epoch for r in ok])),
            })
        summary.append(row)
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Sweep one regularization hyperparameter")
    parser.add_argument("--train", required=True)
    parser.add_argument("--val", required=True)
    parser.add_argument("--param", required=True, choices=SWEEPABLE_PARAMS)
    parser.add_argument("--values", required=True, help="Comma separated values, hidden units as 16x16")
    parser.add_argument("--repeats", type=int, default=1)
    parser.add_argument("--out", default=None, help="Directory for sweep_results.json")
    add_config_args(parser)
    args = parser.parse_args(argv)

    values = parse_sweep_values(args.param, args.values)
    base_cfg = config_from_args(args)

    train_loader, val_loader = build_multihot_dataloaders(
        args.train, args.val, base_cfg.dimension,
        batch_size_train=base_cfg.batch_size,
        num_workers=args.num_workers,
        index_base=base_cfg.index_base,
        seed=base_cfg.seed,
    )

    records = run_sweep(base_cfg, args.param, values, train_loader, val_loader, repeats=args.repeats)
    summary = summarize_sweep(records)

    for row in summary:
        if row["val_loss_mean"] is None:
            print(f"{row['param']}={row['value']}: all {row['runs']} runs diverged")
            continue
        print(f"{row['param']}={row['value']}: val_loss={row['val_loss_mean']:.4f}±{row['val_loss_std']:.4f} "
              f"(min {row['val_loss_min']:.4f}) val_acc={row['val_acc_mean']:.4f} "
              f"epochs={row['best_epoch_mean']:.1f} diverged={row['diverged']}/{row['runs']}")

    if args.out:
        os.makedirs(args.out, exist_ok=True)
        path = os.path.join(args.out, "sweep_results.json")
        with open(path, "w") as fh:
            json.dump(json_safe({
                "base_cfg": base_cfg.to_dict(),
                "records": [asdict(r) for r in records],
                "summary": summary,
            }), fh, indent=2, allow_nan=False)
        print(f"→ Written to {path}")
    return summary


if __name__ == "__main__":
    main()
