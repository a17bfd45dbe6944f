"""
Forward Graph Builder — the BERT forward pass as a symbolic graph.

build_graph() describes ONE forward call over an assembled batch:

    tokens, positions ─► embeddings ─► layer 0 ─► ... ─► layer N-1 ─► pooler
                                          ▲                  ▲
    valid_mask ─► attention bias ─────────┴──────────────────┘
    pool_weights ─────────────────────────────────────────────────► pooler

The same function builds both graphs of the two-phase protocol:
  - measure=True:  shapes only, for sizing the compute arena. No input data
                   is written (the Graph would refuse it anyway).
  - measure=False: identical nodes, plus the batch data attached to the
                   input nodes, ready for GraphExecutor.compute().

Weights are referenced by their HuggingFace parameter names, looked up on
the BertModel. Nothing is copied; the graph holds references to the
model's tensors, which stay read-only.

SHAPES (B = batch, L = max_len of this batch, E = dim, H = heads, D = E/H):

    hidden states     (B, L, E)
    per-head Q, V     (B, H, L, D)
    per-head Kᵀ       (B, H, D, L)
    scores / probs    (B, H, L, L)
    attention bias    (B, 1, L, L)   broadcast over H
    pooled output     (B, E)
"""

import math
from typing import Optional

import torch

from bert_embed.batch import AssembledBatch
from bert_embed.errors import MissingWeightError
from bert_embed.graph import Graph
from bert_embed.model import BertModel


# Default magnitude of the attention bias. After softmax, a padded key gets
# weight ~exp(-scale), i.e. exactly 0 at any working precision. float16
# tops out at 65504, so it gets a smaller constant.
ATTN_MASK_SCALE = 1e5
ATTN_MASK_SCALE_FP16 = 1e4


def resolve_attn_mask_scale(dtype: torch.dtype, requested: Optional[float] = None) -> float:
    """
    Pick the attention bias scale for a working dtype.

    Raises:
        ValueError: If the scale would overflow the dtype when added to
                    attention scores.
    """
    if requested is None:
        return ATTN_MASK_SCALE_FP16 if dtype == torch.float16 else ATTN_MASK_SCALE
    limit = torch.finfo(dtype).max / 2
    if not 0.0 < requested < limit:
        raise ValueError(
            f"attn_mask_scale must be in (0, {limit:.3g}) for {dtype}, got {requested}"
        )
    return float(requested)


class _WeightTable:
    """Named weight lookup that registers each tensor in the graph once."""

    def __init__(self, model: BertModel, graph: Graph):
        self.graph = graph
        self.tensors = dict(model.named_parameters())
        self.handles: dict[str, int] = {}

    def tensor(self, name: str) -> torch.Tensor:
        if name not in self.tensors:
            raise MissingWeightError([name])
        return self.tensors[name]

    def __call__(self, name: str) -> int:
        if name not in self.handles:
            self.handles[name] = self.graph.param(self.tensor(name), name=name)
        return self.handles[name]


def build_attention_bias(g: Graph, valid_mask: int, scale: float) -> int:
    """
    Additive attention bias from the validity mask.

        pair  = mask ⊗ mask           1 iff query AND key are real
        bias  = (pair - 1) * scale    0 for real pairs, -scale otherwise

    Args:
        valid_mask: (B, L, 1) handle.

    Returns:
        (B, 1, L, L) handle.
    """
    bsz, seq_len, _ = g.shape(valid_mask)
    pair = g.matmul(valid_mask, g.transpose(valid_mask, 1, 2))   # (B, L, L)
    bias = g.scale(g.add_scalar(pair, -1.0), scale)
    return g.reshape(bias, (bsz, 1, seq_len, seq_len))


def build_embeddings(g: Graph, w: _WeightTable, eps: float, tokens: int, positions: int) -> int:
    """word[tokens] + token_type[0] + position[positions], then LayerNorm."""
    h = g.get_rows(w("embeddings.word_embeddings.weight"), tokens)
    token_type = w.tensor("embeddings.token_type_embeddings.weight")[0]
    h = g.add(h, g.param(token_type, name="embeddings.token_type_embeddings.weight[0]"))
    h = g.add(h, g.get_rows(w("embeddings.position_embeddings.weight"), positions))
    return g.layer_norm(
        h, w("embeddings.LayerNorm.weight"), w("embeddings.LayerNorm.bias"), eps
    )


def build_encoder_layer(
    g: Graph,
    w: _WeightTable,
    layer_id: int,
    x: int,
    bias: int,
    n_heads: int,
    eps: float,
    gelu_approximate: str = "none",
) -> int:
    """
    One post-norm encoder layer.

    Attention sublayer:
      Q, K, V = x·Wᵀ + b                      (B, L, E)
      split heads                             (B, H, L, D)
      probs = softmax(Q·Kᵀ / sqrt(D) + bias)  (B, H, L, L)
      merge heads of probs·V                  (B, L, E)
      h = LayerNorm(x + out·Woᵀ + bo)

    Feed-forward sublayer:
      y = LayerNorm(h + GELU(h·W1ᵀ + b1)·W2ᵀ + b2)
    """
    p = f"encoder.layer.{layer_id}."
    bsz, seq_len, dim = g.shape(x)
    head_dim = dim // n_heads

    def project(name: str) -> int:
        return g.linear(x, w(p + name + ".weight"), w(p + name + ".bias"))

    def split_heads(t: int) -> int:
        # (B, L, E) → (B, L, H, D) → (B, H, L, D)
        return g.permute(g.reshape(t, (bsz, seq_len, n_heads, head_dim)), (0, 2, 1, 3))

    # ── Self-attention ──
    q = split_heads(project("attention.self.query"))
    k = split_heads(project("attention.self.key"))
    v = split_heads(project("attention.self.value"))

    scores = g.matmul(q, g.transpose(k, -2, -1))
    scores = g.scale(scores, 1.0 / math.sqrt(head_dim))
    probs = g.softmax(g.add(scores, bias))

    # (B, H, L, D) → (B, L, H, D) → (B, L, E)
    attn = g.matmul(probs, v)
    attn = g.reshape(g.cont(g.permute(attn, (0, 2, 1, 3))), (bsz, seq_len, dim))

    attn = g.linear(
        attn,
        w(p + "attention.output.dense.weight"),
        w(p + "attention.output.dense.bias"),
    )
    h = g.layer_norm(
        g.add(attn, x),
        w(p + "attention.output.LayerNorm.weight"),
        w(p + "attention.output.LayerNorm.bias"),
        eps,
    )

    # ── Feed-forward ──
    ff = g.linear(h, w(p + "intermediate.dense.weight"), w(p + "intermediate.dense.bias"))
    ff = g.gelu(ff, approximate=gelu_approximate)
    ff = g.linear(ff, w(p + "output.dense.weight"), w(p + "output.dense.bias"))
    return g.layer_norm(
        g.add(ff, h),
        w(p + "output.LayerNorm.weight"),
        w(p + "output.LayerNorm.bias"),
        eps,
    )


def build_pooler(g: Graph, x: int, pool_weights: int) -> int:
    """
    Weighted mean over the sequence, then L2 normalization.

    Args:
        x: (B, L, E) final hidden states.
        pool_weights: (B, 1, L) handle, 1/len on real tokens.

    Returns:
        (B, E) handle.
    """
    bsz, _, dim = g.shape(x)
    pooled = g.matmul(pool_weights, x)              # (B, 1, E)
    norm = g.sqrt(g.sum_rows(g.sqr(pooled)))        # (B, 1, 1)
    return g.reshape(g.div(pooled, norm), (bsz, dim))


def build_graph(
    model: BertModel,
    batch: AssembledBatch,
    measure: bool = False,
    attn_mask_scale: Optional[float] = None,
) -> tuple[Graph, int]:
    """
    Build the complete forward graph for one batch.

    Args:
        model: Loaded model (weights must be on the execution device).
        batch: Output of assemble_batch().
        measure: Build a sizing graph (shapes only, no input data).
        attn_mask_scale: Attention bias scale (None = dtype default).

    Returns:
        (graph, output_handle). The output is (batch_size, dim).

    Raises:
        MissingWeightError: If the model lacks a tensor the graph needs.
    """
    config = model.config
    dtype = model.dtype
    scale = resolve_attn_mask_scale(dtype, attn_mask_scale)
    bsz, seq_len = batch.batch_size, batch.max_len

    g = Graph(measure=measure)
    w = _WeightTable(model, g)

    tokens = g.input((bsz, seq_len), torch.long, name="tokens")
    positions = g.input((bsz, seq_len), torch.long, name="positions")
    valid_mask = g.input((bsz, seq_len, 1), dtype, name="valid_mask")
    pool_weights = g.input((bsz, 1, seq_len), dtype, name="pool_weights")

    if not measure:
        g.set_input(tokens, batch.tokens)
        g.set_input(positions, batch.positions)
        g.set_input(valid_mask, batch.valid_mask.to(dtype).unsqueeze(2))
        g.set_input(pool_weights, batch.pool_weights.to(dtype).unsqueeze(1))

    bias = build_attention_bias(g, valid_mask, scale)

    x = build_embeddings(g, w, config.norm_eps, tokens, positions)
    approximate = "tanh" if config.hidden_act == "gelu_tanh" else "none"
    for layer_id in range(config.n_layers):
        x = build_encoder_layer(
            g, w, layer_id, x, bias, config.n_heads, config.norm_eps, approximate
        )

    return g, build_pooler(g, x, pool_weights)
