#!/usr/bin/env python3
"""
Review Encoding (Step 1)

Turns raw review text into word-index sequences using the IMDB index
convention:

    0            padding (never emitted here)
    start_char   marks the beginning of every review      (default 1)
    oov_char     word outside the kept vocabulary          (default 2)
    rank + index_from   word with frequency rank `rank`   (default offset 3)

Input JSONL:
  { "id": "...", "text": "...", "label": 0 | 1 | "neg" | "pos" }

Output:
  <outdir>/sequences.jsonl   { "id": "...", "sequence": [1, 14, 22, ...], "label": 0 | 1 }
  <outdir>/word_index.json   { "word": rank, ... }

Usage:
  python -m data_pipeline.preprocessing.encode_reviews \
      --input dataset/raw/reviews.jsonl \
      --outdir dataset/encoded \
      --num-words 10000
"""

from __future__ import annotations
import argparse
import json
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional


LABEL_MAP = {
    "neg": 0,
    "pos": 1,
    0: 0,
    1: 1,
}

_BREAK_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_TOKEN_RE = re.compile(r"[a-z0-9']+")


@dataclass(frozen=True)
class IndexConvention:
    start_char: int = 1
    oov_char: int = 2
    index_from: int = 3

    def __post_init__(self):
        if self.index_from <= max(self.start_char, self.oov_char):
            raise ValueError("index_from must be greater than start_char and oov_char")
        if self.start_char == self.oov_char:
            raise ValueError("start_char and oov_char must differ")


# ---------------------------------------------------------
# Tokenization
# ---------------------------------------------------------
def tokenize(text: str) -> List[str]:
    text = _BREAK_RE.sub(" ", text.lower())
    return [t.strip("'") for t in _TOKEN_RE.findall(text) if t.strip("'")]


# ---------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------
def build_word_index(texts: Iterable[str], num_words: Optional[int] = None) -> Dict[str, int]:
    """
    Rank words by frequency, most frequent first (rank 1).
    Ties keep first-occurrence order. `num_words` caps the vocabulary size.
    """
    counts: Counter = Counter()
    for text in texts:
        counts.update(tokenize(text))

    # Counter.most_common is stable for equal counts (insertion order)
    ranked = counts.most_common(num_words)
    return {word: rank for rank, (word, _) in enumerate(ranked, start=1)}


def encode_text(
    text: str,
    word_index: Dict[str, int],
    convention: IndexConvention = IndexConvention(),
    num_words: Optional[int] = None,
) -> List[int]:
    """Encode one review; ids >= num_words fall back to the oov marker."""
    seq = [convention.start_char]
    for token in tokenize(text):
        rank = word_index.get(token)
        if rank is None:
            seq.append(convention.oov_char)
            continue
        idx = rank + convention.index_from
        if num_words is not None and idx >= num_words:
            idx = convention.oov_char
        seq.append(idx)
    return seq


def decode_sequence(
    sequence: Iterable[int],
    word_index: Dict[str, int],
    convention: IndexConvention = IndexConvention(),
) -> str:
    reverse = {rank + convention.index_from: word for word, rank in word_index.items()}
    return " ".join(reverse.get(i, "?") for i in sequence)


# ---------------------------------------------------------
# JSONL helpers
# ---------------------------------------------------------
def load_reviews(path: str) -> List[Dict]:
    items = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            items.append(json.loads(line))
    return items


def encode_records(
    records: List[Dict],
    num_words: Optional[int] = None,
    convention: IndexConvention = IndexConvention(),
):
    # keep only ranks whose encoded id (rank + index_from) stays below num_words
    vocab_size = None if num_words is None else max(num_words - convention.index_from - 1, 0)
    word_index = build_word_index((r["text"] for r in records), vocab_size)
    out = []
    for n, r in enumerate(records):
        label = r["label"]
        if label not in LABEL_MAP:
            raise ValueError(f"record {r.get('id', n)}: unknown label {label!r}")
        out.append({
            "id": r.get("id") or f"review-{n}",
            "sequence": encode_text(r["text"], word_index, convention, num_words),
            "label": LABEL_MAP[label],
        })
    return out, word_index


# ---------------------------------------------------------
# Main
# ---------------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="Encode review text into word-index sequences")
    parser.add_argument("--input", required=True, help="Raw reviews JSONL")
    parser.add_argument("--outdir", required=True)
    parser.add_argument("--num-words", type=int, default=10000,
                        help="Largest id + 1 kept; rarer words become the oov marker")
    parser.add_argument("--start-char", type=int, default=1)
    parser.add_argument("--oov-char", type=int, default=2)
    parser.add_argument("--index-from", type=int, default=3)
    args = parser.parse_args(argv)

    convention = IndexConvention(args.start_char, args.oov_char, args.index_from)
    records = load_reviews(args.input)
    encoded, word_index = encode_records(records, args.num_words, convention)

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    with open(outdir / "sequences.jsonl", "w", encoding="utf-8") as fh:
        for r in encoded:
            fh.write(json.dumps(r) + "\n")
    with open(outdir / "word_index.json", "w", encoding="utf-8") as fh:
        json.dump(word_index, fh, ensure_ascii=False)

    print("Reviews encoded:")
    print(" total:", len(encoded))
    print(" vocabulary:", len(word_index))
    print("→", outdir / "sequences.jsonl")


if __name__ == "__main__":
    main()
