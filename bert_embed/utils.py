"""
Utility functions for the embedding pipeline.

Cross-cutting concerns that don't belong to any single component:
reproducibility (seeding), diagnostics (parameter counting), timing,
logging, and checkpoint save/load.

No frameworks here: console output via print, an optional plain-text log
file, and torch.save for checkpoints.
"""

import os
import time
import random
from typing import Optional
from datetime import datetime

import numpy as np
import torch
import torch.nn as nn


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch (CPU and CUDA) RNGs.

    Inference itself is deterministic; seeding matters for randomly
    initialized models in tests, which must produce the same weights on
    every run.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(model: nn.Module) -> int:
    """
    Total number of parameters (all of them: a loaded model is frozen).

    all-MiniLM-L6-v2 has 22,565,376 (see ModelConfig).
    """
    return sum(p.numel() for p in model.parameters())


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("forward", device) as t:
            embeddings = embedder.encode_batch(texts)
        print(t)            # "forward: 0.0234s"
        t.elapsed_ms        # 23.4

    CUDA kernels run asynchronously, so for a CUDA device the timer
    synchronizes before reading the clock on both ends.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def _sync(self) -> None:
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)

    def __enter__(self):
        self._sync()
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self._sync()
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000.0

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class EmbedLogger:
    """
    Lightweight logger that writes to the console and an optional log file.

    Three kinds of lines:
      [INFO]   model loading, device info
      [DEBUG]  tokenizer diagnostics (dropped characters, unknown words);
               only written when verbose=True
      batch    one line per forward call (see log_batch)

    Tokenization anomalies are deliberately NOT warnings: real text is full
    of emoji and symbols the vocabulary does not cover.
    """

    def __init__(self, log_dir: Optional[str] = None, verbose: bool = False):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            verbose: Also emit debug lines.
        """
        self.verbose = verbose
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"embed_{timestamp}.log")
            self.log_file = open(log_path, "w")
            print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        """Write message to console and optionally to log file."""
        print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def log_debug(self, msg: str) -> None:
        """Log a diagnostic message (verbose only)."""
        if self.verbose:
            self._write(f"[DEBUG] {msg}")

    def log_batch(
        self,
        batch_size: int,
        max_len: int,
        n_tokens: int,
        compute_mb: float,
        elapsed_ms: float,
    ) -> None:
        """
        Log one forward call (verbose only).

        Example output:
          batch    8 x  42 |    187 tok | compute   3.52 MB |    12.4 ms
        """
        if not self.verbose:
            return
        self._write(
            f"batch {batch_size:>4d} x {max_len:>3d} | "
            f"{n_tokens:>6d} tok | "
            f"compute {compute_mb:>6.2f} MB | "
            f"{elapsed_ms:>7.1f} ms"
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None


# ═══════════════════════════════════════════════════════════════════════════
# CHECKPOINT UTILITIES
# ═══════════════════════════════════════════════════════════════════════════

def save_checkpoint(model: nn.Module, path: str) -> None:
    """
    Save a self-contained model checkpoint.

    WHAT'S IN A CHECKPOINT:
      - model_state_dict: the weights (HuggingFace parameter names)
      - model_config:     ModelConfig as dict, to rebuild the architecture
      - vocab:            the ordered token list (id = position)

    Without the config and the vocabulary the weights are useless: the
    tokenizer ids must match the embedding table rows exactly.

    Args:
        model: A BertModel with a vocabulary.
        path: File path for the checkpoint (.pt file).
    """
    if model.vocab is None:
        raise ValueError("Cannot checkpoint a model without a vocabulary")

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    checkpoint = {
        "model_state_dict": model.state_dict(),
        "model_config": model.config.to_dict(),
        "vocab": list(model.vocab.tokens),
    }
    torch.save(checkpoint, path)
    print(f"Checkpoint saved: {path}")


def load_checkpoint(path: str, device: Optional[torch.device] = None):
    """
    Rebuild a BertModel from a checkpoint written by save_checkpoint().

    Args:
        path: Path to the checkpoint file.
        device: Device to map tensors to (handles CPU→GPU, GPU→CPU).

    Returns:
        BertModel with weights loaded (not yet frozen).
    """
    from bert_embed.config import ModelConfig
    from bert_embed.model import BertModel
    from bert_embed.tokenizer import Vocabulary

    map_location = device if device else "cpu"
    checkpoint = torch.load(path, map_location=map_location, weights_only=True)

    config = ModelConfig.from_dict(checkpoint["model_config"])
    model = BertModel(config, Vocabulary(checkpoint["vocab"]))
    model.load_weights(checkpoint["model_state_dict"])

    print(f"Checkpoint loaded: {path}")
    return model
