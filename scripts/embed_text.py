"""
Text embedding CLI.

USAGE:
    # Embed one or more prompts, print a preview of each vector
    python scripts/embed_text.py --model models/all-MiniLM-L6-v2 \
        --prompt "A man is eating food." --prompt "A man is eating pasta."

    # Embed every line of a file and save the matrix
    python scripts/embed_text.py --model models/all-MiniLM-L6-v2 \
        --file sentences.txt --batch-size 32 --output embeddings.npy

    # Show the token ids and pieces instead of embeddings
    python scripts/embed_text.py --model models/all-MiniLM-L6-v2 \
        --prompt "unaffable" --tokens

WHAT THIS SCRIPT DOES:
    1. Loads the model (HuggingFace directory or .pt checkpoint)
    2. Tokenizes the inputs
    3. Runs the forward graph and prints or saves the embeddings
    4. With two or more inputs, prints their pairwise cosine similarities
"""

import os
import sys
import argparse

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.config import EmbedConfig
from bert_embed.embedder import Embedder
from bert_embed.utils import count_parameters


def read_inputs(args: argparse.Namespace) -> list[str]:
    texts = list(args.prompt or [])
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            texts.extend(line.rstrip("\n") for line in f if line.strip())
    return texts


def print_tokens(embedder: Embedder, texts: list[str]) -> None:
    for text in texts:
        ids = embedder.tokenize(text)
        pieces = embedder.tokenizer.decode_ids(ids)
        print(f"\n{text!r} ({len(ids)} tokens)")
        print("  ids:    " + " ".join(str(i) for i in ids))
        print("  pieces: " + " ".join(pieces))


def print_embeddings(texts: list[str], embeddings: np.ndarray, preview: int = 8) -> None:
    for text, vec in zip(texts, embeddings):
        head = ", ".join(f"{x:+.4f}" for x in vec[:preview])
        print(f"\n{text!r}\n  [{head}, ...] (dim {vec.shape[0]})")

    if len(texts) > 1:
        # Rows are unit length, so the Gram matrix is cosine similarity
        sims = embeddings @ embeddings.T
        print("\nCosine similarity:")
        for i in range(len(texts)):
            row = " ".join(f"{sims[i, j]:+.3f}" for j in range(len(texts)))
            print(f"  [{i}] {row}")


def main():
    parser = argparse.ArgumentParser(
        description="Embed text with a pretrained BERT sentence encoder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--model", type=str, required=True,
        help="HuggingFace model directory or .pt checkpoint"
    )
    parser.add_argument(
        "--prompt", type=str, action="append", default=None,
        help="Text to embed (repeatable)"
    )
    parser.add_argument(
        "--file", type=str, default=None,
        help="File with one text per line"
    )
    parser.add_argument(
        "--tokens", action="store_true",
        help="Print token ids and pieces instead of embeddings"
    )
    parser.add_argument(
        "--threads", type=int, default=0,
        help="CPU threads for the forward pass (0 = PyTorch default)"
    )
    parser.add_argument(
        "--device", type=str, default="auto",
        help="Device: auto, cpu, cuda, mps"
    )
    parser.add_argument(
        "--dtype", type=str, default="auto",
        choices=["auto", "float32", "float16", "bfloat16"],
        help="Weight and activation precision"
    )
    parser.add_argument(
        "--batch-size", type=int, default=None,
        help="Texts per forward call (default: all at once)"
    )
    parser.add_argument(
        "--max-tokens", type=int, default=None,
        help="Token budget per text (default: model maximum)"
    )
    parser.add_argument(
        "--output", type=str, default=None,
        help="Save embeddings to this .npy file"
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Print tokenizer diagnostics and per-batch stats"
    )

    args = parser.parse_args()

    texts = read_inputs(args)
    if not texts:
        parser.error("nothing to embed: pass --prompt and/or --file")

    config = EmbedConfig(
        device=args.device,
        dtype=args.dtype,
        n_threads=args.threads,
        batch_size=args.batch_size,
        max_tokens=args.max_tokens,
        verbose=args.verbose,
    )
    embedder = Embedder.from_pretrained(args.model, config)
    print(f"Parameters: {count_parameters(embedder.model):,}")

    if args.tokens:
        print_tokens(embedder, texts)
        embedder.close()
        return

    result = embedder.encode_with_stats(texts, show_progress=len(texts) > 100)

    if args.output:
        np.save(args.output, result.embeddings)
        print(f"Saved {result.embeddings.shape} embeddings to {args.output}")
    else:
        print_embeddings(texts, result.embeddings)

    print("\n" + result.stats_string())
    embedder.close()


if __name__ == "__main__":
    main()
