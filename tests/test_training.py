# tests/test_training.py
import argparse
import json
import math
import random
from pathlib import Path

import pytest
import torch

from ml.training.config import TrainConfig
from ml.training.dataloader import build_multihot_dataloaders, make_dataloader
from ml.training.sequence_datasets import MultiHotDataset, load_sequences
from ml.training.sweeps import parse_sweep_values, run_sweep, summarize_sweep
from ml.training import sweeps
from ml.training.train import (
    add_config_args,
    config_from_args,
    build_optimizer,
    evaluate,
    fit,
    json_safe,
    load_model_from_checkpoint,
    main,
)
from ml.models.dense_classifier import DenseClassifier


# ------------------------------------------------------
# Synthetic review corpus
# ------------------------------------------------------
# Word 4 marks positive reviews, word 5 negative ones; 6..20 is noise.

DIM = 20


def make_records(n=40, seed=0, flip=False):
    rng = random.Random(seed)
    records = []
    for i in range(n):
        label = i % 2
        marker = 4 if label == 1 else 5
        noise = [rng.randint(6, DIM) for _ in range(rng.randint(0, 6))]
        seq = [1, marker] + noise
        rng.shuffle(seq)
        records.append({"id": f"r{i}", "sequence": seq, "label": (1 - label) if flip else label})
    return records


def write_jsonl(path: Path, records):
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for r in records:
            f.write(json.dumps(r) + "\n")


def loaders(train_records, val_records, batch_size=8):
    train_ds = MultiHotDataset.from_sequences(
        [r["sequence"] for r in train_records], [r["label"] for r in train_records], DIM)
    val_ds = MultiHotDataset.from_sequences(
        [r["sequence"] for r in val_records], [r["label"] for r in val_records], DIM)
    return (
        make_dataloader(train_ds, batch_size, shuffle=True, seed=0),
        make_dataloader(val_ds, 64, shuffle=False),
    )


def small_cfg(**overrides):
    base = dict(dimension=DIM, hidden_units=(8,), optimizer="adam", lr=0.05,
                epochs=15, batch_size=8, device="cpu", seed=0)
    base.update(overrides)
    return TrainConfig(**base)


# ------------------------------------------------------
# Datasets
# ------------------------------------------------------

def test_load_sequences_skips_blank_lines_and_maps_labels(tmp_path):
    path = tmp_path / "split.jsonl"
    path.write_text(
        json.dumps({"id": "a", "sequence": [1, 4], "label": "pos"}) + "\n\n"
        + json.dumps({"id": "b", "sequence": [], "label": 0}) + "\n"
    )
    seqs, labels = load_sequences(str(path))
    assert seqs == [[1, 4], []]
    assert labels == [1, 0]


def test_load_sequences_rejects_unknown_label(tmp_path):
    path = tmp_path / "split.jsonl"
    write_jsonl(path, [{"id": "a", "sequence": [1], "label": "neutral"}])
    with pytest.raises(ValueError):
        load_sequences(str(path))


def test_load_sequences_malformed_json_raises(tmp_path):
    path = tmp_path / "split.jsonl"
    path.write_text("{not json}\n")
    with pytest.raises(json.JSONDecodeError):
        load_sequences(str(path))


def test_multihot_dataset_items(tmp_path):
    path = tmp_path / "train.jsonl"
    write_jsonl(path, [{"id": "a", "sequence": [1, 3, 3], "label": 1}])
    ds = MultiHotDataset.from_jsonl(str(path), dimension=4)
    x, y = ds[0]
    assert len(ds) == 1
    assert ds.dimension == 4
    assert x.tolist() == [1.0, 0.0, 1.0, 0.0]
    assert y.tolist() == [1.0]


def test_multihot_dataset_out_of_range_propagates(tmp_path):
    path = tmp_path / "train.jsonl"
    write_jsonl(path, [{"id": "a", "sequence": [1, 30], "label": 1}])
    with pytest.raises(IndexError):
        MultiHotDataset.from_jsonl(str(path), dimension=DIM)


def test_multihot_dataset_length_mismatch():
    with pytest.raises(ValueError):
        MultiHotDataset([[0.0, 1.0]], [1, 0])


def test_build_multihot_dataloaders(tmp_path):
    write_jsonl(tmp_path / "train.jsonl", make_records(20))
    write_jsonl(tmp_path / "val.jsonl", make_records(10, seed=1))
    train_loader, val_loader = build_multihot_dataloaders(
        str(tmp_path / "train.jsonl"), str(tmp_path / "val.jsonl"), DIM,
        batch_size_train=4, batch_size_val=10,
    )
    xb, yb = next(iter(val_loader))
    assert xb.shape == (10, DIM)
    assert yb.shape == (10, 1)
    assert len(train_loader) == 5


# ------------------------------------------------------
# Training
# ------------------------------------------------------

def test_build_optimizer_applies_weight_decay():
    model = DenseClassifier(DIM, (4,))
    for name, cls in [("rmsprop", torch.optim.RMSprop), ("adam", torch.optim.Adam), ("sgd", torch.optim.SGD)]:
        opt = build_optimizer(model, small_cfg(optimizer=name, weight_decay=1e-3))
        assert isinstance(opt, cls)
        assert opt.param_groups[0]["weight_decay"] == 1e-3


def test_fit_learns_separable_reviews():
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    result = fit(small_cfg(), train_loader, val_loader, verbose=False)

    assert len(result.history["val_loss"]) == 15
    assert result.history["train_loss"][-1] < result.history["train_loss"][0]
    assert result.best_val_acc >= 0.9
    assert not result.stopped_early
    assert 1 <= result.best_epoch <= 15


def test_early_stopping_restores_best_weights():
    # validation labels are flipped, so val loss worsens as training improves
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1, flip=True))
    cfg = small_cfg(epochs=30, early_stopping_patience=2)
    result = fit(cfg, train_loader, val_loader, verbose=False)

    assert result.stopped_early
    assert len(result.history["val_loss"]) == result.best_epoch + 2

    restored = evaluate(result.model, val_loader)
    assert restored["loss"] == pytest.approx(result.best_val_loss, rel=1e-4)


def test_reduce_lr_on_plateau_lowers_lr():
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1, flip=True))
    cfg = small_cfg(epochs=6, reduce_lr_patience=0, reduce_lr_factor=0.5)
    result = fit(cfg, train_loader, val_loader, verbose=False)

    lrs = result.history["lr"]
    assert lrs[0] == 0.05
    assert lrs[-1] < lrs[0]
    assert all(b <= a for a, b in zip(lrs, lrs[1:]))


def test_fit_is_reproducible_for_seed():
    a = fit(small_cfg(epochs=3), *loaders(make_records(40), make_records(20, seed=1)), verbose=False)
    b = fit(small_cfg(epochs=3), *loaders(make_records(40), make_records(20, seed=1)), verbose=False)
    assert a.history["val_loss"] == pytest.approx(b.history["val_loss"])


def test_checkpoints_written_and_loadable(tmp_path):
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    cfg = small_cfg(epochs=2, checkpoint_dir=str(tmp_path / "ckpt"), dropout=0.5)
    fit(cfg, train_loader, val_loader, verbose=False)

    assert (tmp_path / "ckpt" / "last_model.pt").exists()
    model, loaded_cfg = load_model_from_checkpoint(str(tmp_path / "ckpt" / "best_model.pt"))
    assert loaded_cfg.dropout == 0.5
    assert model.input_dim == DIM


def test_evaluate_reports_metrics():
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    result = fit(small_cfg(), train_loader, val_loader, verbose=False)
    metrics = evaluate(result.model, val_loader)
    for key in ("loss", "accuracy", "precision", "recall", "f1", "roc_auc"):
        assert key in metrics
    assert metrics["accuracy"] >= 0.9


def test_train_cli_end_to_end(tmp_path):
    write_jsonl(tmp_path / "train.jsonl", make_records(40))
    write_jsonl(tmp_path / "val.jsonl", make_records(20, seed=1))
    write_jsonl(tmp_path / "test.jsonl", make_records(20, seed=2))
    ckpt = tmp_path / "ckpt"

    summary = main([
        "--train", str(tmp_path / "train.jsonl"),
        "--val", str(tmp_path / "val.jsonl"),
        "--test", str(tmp_path / "test.jsonl"),
        "--preset", "dropout",
        "--dimension", str(DIM),
        "--epochs", "2",
        "--batch-size", "8",
        "--device", "cpu",
        "--checkpoint-dir", str(ckpt),
    ])

    assert summary["cfg"]["dropout"] == 0.5
    assert "test_metrics" in summary
    saved = json.loads((ckpt / "training_summary.json").read_text())
    assert saved["best_epoch"] == summary["best_epoch"]
    assert len(saved["history"]["val_loss"]) == 2


# ------------------------------------------------------
# Sweeps
# ------------------------------------------------------

def test_parse_sweep_values():
    assert parse_sweep_values("lr", "1e-3, 1e-2") == [1e-3, 1e-2]
    assert parse_sweep_values("hidden_units", "4x4,16") == [(4, 4), (16,)]
    with pytest.raises(ValueError):
        parse_sweep_values("epochs", "1,2")
    with pytest.raises(ValueError):
        parse_sweep_values("lr", " , ")


def test_run_sweep_records_every_repeat():
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    records = run_sweep(small_cfg(epochs=2), "dropout", [0.0, 0.5], train_loader, val_loader, repeats=2)

    assert len(records) == 4
    assert [(r.value, r.run, r.seed) for r in records] == [
        (0.0, 0, 0), (0.0, 1, 1), (0.5, 0, 0), (0.5, 1, 1),
    ]
    assert all(1 <= r.best_epoch <= 2 for r in records)

    summary = summarize_sweep(records)
    assert [row["value"] for row in summary] == [0.0, 0.5]
    assert all(row["runs"] == 2 for row in summary)
    for row in summary:
        assert row["val_loss_min"] <= row["val_loss_mean"]
        assert row["val_loss_std"] >= 0


def test_run_sweep_hidden_units_accepts_lists():
    train_loader, val_loader = loaders(make_records(20), make_records(10, seed=1))
    records = run_sweep(small_cfg(epochs=1), "hidden_units", [[4], [4, 4]], train_loader, val_loader)
    summary = summarize_sweep(records)
    assert [row["value"] for row in summary] == [[4], [4, 4]]


def test_run_sweep_rejects_bad_args():
    train_loader, val_loader = loaders(make_records(10), make_records(10, seed=1))
    with pytest.raises(ValueError):
        run_sweep(small_cfg(), "epochs", [1], train_loader, val_loader)
    with pytest.raises(ValueError):
        run_sweep(small_cfg(), "lr", [1e-3], train_loader, val_loader, repeats=0)


def test_sweep_cli_writes_results(tmp_path):
    write_jsonl(tmp_path / "train.jsonl", make_records(20))
    write_jsonl(tmp_path / "val.jsonl", make_records(10, seed=1))

    summary = sweeps.main([
        "--train", str(tmp_path / "train.jsonl"),
        "--val", str(tmp_path / "val.jsonl"),
        "--param", "weight_decay",
        "--values", "0,1e-3",
        "--dimension", str(DIM),
        "--epochs", "1",
        "--device", "cpu",
        "--out", str(tmp_path / "out"),
    ])

    assert len(summary) == 2
    saved = json.loads((tmp_path / "out" / "sweep_results.json").read_text())
    assert len(saved["records"]) == 2
    assert saved["base_cfg"]["dimension"] == DIM
    assert not math.isnan(saved["summary"][0]["val_loss_mean"])


# ------------------------------------------------------
# Divergence
# ------------------------------------------------------

def strict_json_loads(text):
    def reject(token):
        raise ValueError(f"non-standard JSON constant {token}")
    return json.loads(text, parse_constant=reject)


def test_fit_stops_on_divergence():
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    result = fit(small_cfg(epochs=5, optimizer="sgd", lr=float("inf")), train_loader, val_loader, verbose=False)

    assert result.diverged
    assert result.diverged_epoch == 1
    assert result.best_epoch == 0
    assert result.best_val_loss is None
    assert result.best_val_acc is None
    assert result.history["val_loss"] == []
    strict_json_loads(json.dumps(json_safe(result.summary()), allow_nan=False))


def test_run_sweep_keeps_diverged_runs_out_of_statistics(tmp_path):
    train_loader, val_loader = loaders(make_records(40), make_records(20, seed=1))
    records = run_sweep(small_cfg(epochs=3, optimizer="sgd"), "lr", [1e-2, float("inf")],
                        train_loader, val_loader, repeats=2)

    assert [r.diverged for r in records] == [False, False, True, True]
    assert all(r.best_epoch == 0 and r.best_val_loss is None for r in records[2:])

    summary = summarize_sweep(records)
    stable, diverged = summary
    assert stable["diverged"] == 0
    assert stable["val_loss_mean"] is not None and math.isfinite(stable["val_loss_mean"])
    assert diverged["runs"] == 2
    assert diverged["diverged"] == 2
    assert diverged["val_loss_mean"] is None
    assert diverged["best_epoch_mean"] is None


def test_sweep_cli_diverged_run_writes_strict_json(tmp_path):
    write_jsonl(tmp_path / "train.jsonl", make_records(20))
    write_jsonl(tmp_path / "val.jsonl", make_records(10, seed=1))

    sweeps.main([
        "--train", str(tmp_path / "train.jsonl"),
        "--val", str(tmp_path / "val.jsonl"),
        "--param", "lr",
        "--values", "inf",
        "--optimizer", "sgd",
        "--dimension", str(DIM),
        "--epochs", "2",
        "--device", "cpu",
        "--out", str(tmp_path / "out"),
    ])

    saved = strict_json_loads((tmp_path / "out" / "sweep_results.json").read_text())
    assert saved["records"][0]["diverged"] is True
    assert saved["records"][0]["best_val_loss"] is None
    assert saved["summary"][0]["diverged"] == 1


def test_train_cli_diverged_run_writes_strict_json(tmp_path):
    write_jsonl(tmp_path / "train.jsonl", make_records(20))
    write_jsonl(tmp_path / "val.jsonl", make_records(10, seed=1))
    write_jsonl(tmp_path / "test.jsonl", make_records(10, seed=2))
    ckpt = tmp_path / "ckpt"

    summary = main([
        "--train", str(tmp_path / "train.jsonl"),
        "--val", str(tmp_path / "val.jsonl"),
        "--test", str(tmp_path / "test.jsonl"),
        "--optimizer", "sgd",
        "--lr", "inf",
        "--dimension", str(DIM),
        "--epochs", "2",
        "--device", "cpu",
        "--checkpoint-dir", str(ckpt),
    ])

    assert summary["diverged"] is True
    assert "test_metrics" not in summary
    assert not (ckpt / "best_model.pt").exists()
    saved = strict_json_loads((ckpt / "training_summary.json").read_text())
    assert saved["best_epoch"] == 0
    assert saved["best_val_acc"] is None


# ------------------------------------------------------
# CLI config
# ------------------------------------------------------

def parse_cfg(argv):
    parser = argparse.ArgumentParser()
    add_config_args(parser)
    return config_from_args(parser.parse_args(argv))


def test_cli_flags_disable_preset_callbacks():
    cfg = parse_cfg(["--preset", "combined", "--device", "cpu"])
    assert cfg.early_stopping_patience == 3
    assert cfg.reduce_lr_patience == 1

    cfg = parse_cfg(["--preset", "combined", "--device", "cpu", "--no-early-stopping", "--no-reduce-lr"])
    assert cfg.early_stopping_patience is None
    assert cfg.reduce_lr_patience is None
    assert cfg.dropout == 0.5


def test_cli_patience_and_disable_flag_conflict():
    with pytest.raises(SystemExit):
        parse_cfg(["--patience", "2", "--no-early-stopping"])
