"""
Shared fixtures: a tiny BERT-layout vocabulary and a tiny random model.

The vocabulary keeps the bert-base-uncased special-token ids:
  0 [PAD], 1-99 [unused*], 100 [UNK], 101 [CLS], 102 [SEP], 103 [MASK]
followed by a handful of words and "##" continuation pieces.
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.config import ModelConfig
from bert_embed.model import BertModel
from bert_embed.tokenizer import Vocabulary
from bert_embed.utils import set_seed


WORDS = [
    "the", "cat", "sat", "on", "mat", "a", "dog", "ran",
    "running", "run", "##ning",
    "un", "##aff", "##able", "able",
    "cafe", "au", "lait", "s", "il", "vous", "pl", "##ait",
    "hello", "world", "你", "好",
    ",", ".", "!", "'",
    "##s", "##b",
]

VOCAB_TOKENS = (
    ["[PAD]"]
    + [f"[unused{i}]" for i in range(99)]
    + ["[UNK]", "[CLS]", "[SEP]", "[MASK]"]
    + WORDS
)


@pytest.fixture
def vocab():
    return Vocabulary(VOCAB_TOKENS)


@pytest.fixture
def tiny_config():
    """Small config for fast tests; vocab matches VOCAB_TOKENS."""
    return ModelConfig(
        vocab_size=len(VOCAB_TOKENS),
        max_seq_len=16,
        dim=32,
        hidden_dim=64,
        n_heads=4,
        n_layers=2,
    )


@pytest.fixture
def tiny_model(tiny_config, vocab):
    set_seed(0)
    return BertModel(tiny_config, vocab).freeze()


class RecordingLogger:
    """Stands in for EmbedLogger and keeps every message."""

    def __init__(self, verbose=True):
        self.verbose = verbose
        self.debug = []
        self.info = []

    def log_debug(self, msg):
        if self.verbose:
            self.debug.append(msg)

    def log_info(self, msg):
        self.info.append(msg)

    def log_batch(self, *args):
        pass

    def close(self):
        pass


@pytest.fixture
def recording_logger():
    return RecordingLogger()
