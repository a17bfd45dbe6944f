"""
Batch assembly: turn a list of variable-length token sequences into the
rectangular tensors a single forward pass needs.

PADDING LAYOUT (lengths [3, 5], max_len = 5):

  tokens        valid_mask     pool_weights           positions
  [c a b s c]   [1 1 1 0 0]    [⅓ ⅓ ⅓ 0 0]            [0 1 2 3 4]
  [c d e f s]   [1 1 1 1 1]    [⅕ ⅕ ⅕ ⅕ ⅕]            [0 1 2 3 4]

  c = [CLS], s = [SEP]. Padded slots hold the [CLS] id as a placeholder.

  The (valid_mask, pool_weights) pair is the ONLY source of truth for
  whether a slot is real. The token id in a padded slot is meaningless: the
  attention bias keeps other tokens from attending to it and its pooling
  weight is zero, so it never reaches the output.

max_len is the longest sequence in THIS batch, not the model maximum, so a
batch of short texts builds a short graph.
"""

from dataclasses import dataclass, field
from typing import Sequence

import torch

from bert_embed.errors import SequenceTooLongError


@dataclass
class AssembledBatch:
    """Padded inputs for one forward call. Rows are sequences."""
    tokens: torch.Tensor        # (batch, max_len) int64
    positions: torch.Tensor     # (batch, max_len) int64, 0..max_len-1 per row
    valid_mask: torch.Tensor    # (batch, max_len) float32, 1 = real token
    pool_weights: torch.Tensor  # (batch, max_len) float32, 1/len on real tokens
    lengths: list[int] = field(default_factory=list)

    @property
    def batch_size(self) -> int:
        return self.tokens.shape[0]

    @property
    def max_len(self) -> int:
        return self.tokens.shape[1]

    @property
    def n_tokens(self) -> int:
        """Real (non-padding) tokens in the batch."""
        return sum(self.lengths)


def assemble_batch(
    sequences: Sequence[Sequence[int]],
    pad_id: int,
    max_seq_len: int,
) -> AssembledBatch:
    """
    Pad token sequences to a common length and derive masks and weights.

    Args:
        sequences: Token id lists, e.g. from Tokenizer.tokenize. Each must be
                   non-empty (the tokenizer always emits [CLS] and [SEP]).
        pad_id: Id written into padded slots (the [CLS] id).
        max_seq_len: The model's position-table size.

    Returns:
        AssembledBatch with all tensors on the CPU.

    Raises:
        ValueError: If the batch or any sequence is empty.
        SequenceTooLongError: If the longest sequence exceeds max_seq_len.
    """
    if len(sequences) == 0:
        raise ValueError("Cannot assemble an empty batch")

    lengths = [len(seq) for seq in sequences]
    if min(lengths) == 0:
        raise ValueError("Cannot assemble a batch containing an empty sequence")

    max_len = max(lengths)
    if max_len > max_seq_len:
        raise SequenceTooLongError(max_len, max_seq_len)

    batch_size = len(sequences)
    tokens = torch.full((batch_size, max_len), pad_id, dtype=torch.long)
    valid_mask = torch.zeros(batch_size, max_len, dtype=torch.float32)
    pool_weights = torch.zeros(batch_size, max_len, dtype=torch.float32)

    for row, (seq, n) in enumerate(zip(sequences, lengths)):
        tokens[row, :n] = torch.as_tensor(seq, dtype=torch.long)
        valid_mask[row, :n] = 1.0
        pool_weights[row, :n] = 1.0 / n

    # Same 0..max_len-1 in every row; slots past a row's length are masked
    positions = torch.arange(max_len, dtype=torch.long).expand(batch_size, max_len).contiguous()

    return AssembledBatch(
        tokens=tokens,
        positions=positions,
        valid_mask=valid_mask,
        pool_weights=pool_weights,
        lengths=lengths,
    )
