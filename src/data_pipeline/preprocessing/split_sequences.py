#!/usr/bin/env python3
"""
Split Encoded Reviews (Step 2)

Input:
  A sequences JSONL file with records of the form:
  {
    "id": "...",
    "sequence": [1, 14, 22, ...],
    "label": 0 | 1
  }

Output:
  Stratified splits:
    <outdir>/train.jsonl
    <outdir>/val.jsonl
    <outdir>/test.jsonl

Usage:
  python -m data_pipeline.preprocessing.split_sequences \
      --input dataset/encoded/sequences.jsonl \
      --outdir dataset/splits \
      --train-ratio 0.6 \
      --val-ratio 0.2 \
      --test-ratio 0.2 \
      --seed 42
"""

from __future__ import annotations
import argparse
import json
import random
from pathlib import Path
from typing import Dict, List


# ---------------------------------------------------------
# Load JSONL
# ---------------------------------------------------------
def load_jsonl(path: str) -> List[Dict]:
    items = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            items.append(json.loads(line))
    return items


# ---------------------------------------------------------
# Write JSONL
# ---------------------------------------------------------
def write_jsonl(path: Path, items: List[Dict]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        for it in items:
            fh.write(json.dumps(it, ensure_ascii=False) + "\n")


# ---------------------------------------------------------
# Stratified Split
# ---------------------------------------------------------
def stratified_split(items: List[Dict], train_r: float, val_r: float, test_r: float, seed: int):
    if min(train_r, val_r, test_r) < 0:
        raise ValueError("split ratios must be non-negative")
    if abs(train_r + val_r + test_r - 1.0) > 1e-6:
        raise ValueError(f"split ratios must sum to 1, got {train_r + val_r + test_r}")

    rng = random.Random(seed)

    # group by label, keeping first-seen label order
    buckets: Dict[int, List[Dict]] = {}
    for it in items:
        buckets.setdefault(it["label"], []).append(it)

    train, val, test = [], [], []

    for label, bucket in buckets.items():
        bucket = list(bucket)
        rng.shuffle(bucket)

        n = len(bucket)
        n_train = int(n * train_r)
        n_val = int(n * val_r)

        train.extend(bucket[:n_train])
        val.extend(bucket[n_train:n_train + n_val])
        test.extend(bucket[n_train + n_val:])

    return train, val, test


# ---------------------------------------------------------
# Main
# ---------------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="Stratified split for encoded reviews")
    parser.add_argument("--input", required=True, help="Input sequences.jsonl")
    parser.add_argument("--outdir", required=True, help="Output directory for splits")
    parser.add_argument("--train-ratio", type=float, default=0.6)
    parser.add_argument("--val-ratio", type=float, default=0.2)
    parser.add_argument("--test-ratio", type=float, default=0.2)
    parser.add_argument("--seed", type=int, default=42)

    args = parser.parse_args(argv)

    items = load_jsonl(args.input)

    train, val, test = stratified_split(
        items,
        args.train_ratio,
        args.val_ratio,
        args.test_ratio,
        args.seed
    )

    outdir = Path(args.outdir)

    write_jsonl(outdir / "train.jsonl", train)
    write_jsonl(outdir / "val.jsonl", val)
    write_jsonl(outdir / "test.jsonl", test)

    print(f"Sequence split complete:")
    print(f"  Train: {len(train)}")
    print(f"  Val:   {len(val)}")
    print(f"  Test:  {len(test)}")
    print(f"→ Written to {outdir}")


if __name__ == "__main__":
    main()
