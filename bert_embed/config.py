"""
Configuration for the BERT encoder and the embedding runtime.

This module is the SINGLE SOURCE OF TRUTH for hyperparameters and runtime
knobs. Nothing else in the codebase hard-codes model sizes.

Two dataclasses:
  - ModelConfig:  the architecture. Fixed by the pretrained weights; changing
                  any field produces a model that cannot load those weights.
  - EmbedConfig:  how we RUN the model (device, precision, threads, batching).
                  Can be changed freely between runs with the same weights.

ARCHITECTURE OVERVIEW:
  The encoder follows BERT (Devlin et al., 2018) as used by sentence
  embedding models such as all-MiniLM-L6-v2:
  - Encoder-only transformer (bidirectional attention, no causal mask)
  - Learned absolute position embeddings + token-type embeddings
  - Post-normalization with LayerNorm (normalize AFTER the residual add)
  - GELU activation in the FFN
  - Bias terms in every linear layer
  - Mean pooling over real tokens, then L2 normalization
"""

from dataclasses import dataclass, asdict
from typing import Optional
import json
import os


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the BERT encoder.

    PARAMETER COUNT BREAKDOWN (all-MiniLM-L6-v2 defaults):
    ─────────────────────────────────────────────
    Word embeddings (vocab_size × dim):        11,720,448
    Position embeddings (max_seq_len × dim):      196,608
    Token-type embeddings (2 × dim):                  768
    Embedding LayerNorm (2 × dim):                    768
    6 Encoder layers:                          10,646,784
      Per layer:
        Wq, Wk, Wv, Wo (dim × dim + dim each):    591,360
        W_in (dim × hidden_dim + hidden_dim):     591,360
        W_out (hidden_dim × dim + dim):           590,208
        2× LayerNorm (2 × dim each):                1,536
        Layer total:                            1,774,464
    ─────────────────────────────────────────────
    TOTAL:                                     22,565,376  (22.6M)
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # Size of the WordPiece vocabulary. 30522 is the bert-base-uncased table
    # shared by most English sentence embedding models.
    vocab_size: int = 30522

    # ── Sequence Length ────────────────────────────────────────────────────
    # Number of learned position embeddings = hard maximum tokens per input
    # (including [CLS] and [SEP]).
    max_seq_len: int = 512

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the hidden state carried through the residual stream and the
    # size of the returned embedding vector.
    dim: int = 384

    # Intermediate width of the feed-forward sublayer (4 × dim is standard).
    hidden_dim: int = 1536

    # ── Attention Heads ────────────────────────────────────────────────────
    # head_dim = dim / n_heads = 384 / 12 = 32
    n_heads: int = 12

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 6

    # ── Normalization ──────────────────────────────────────────────────────
    # Epsilon inside every LayerNorm. BERT uses 1e-12.
    norm_eps: float = 1e-12

    # ── Token Types ────────────────────────────────────────────────────────
    # Segment embeddings (sentence A / sentence B). We only ever embed single
    # segments, so type 0 is used everywhere, but the table is part of the
    # pretrained weights.
    type_vocab_size: int = 2

    # ── Activation ─────────────────────────────────────────────────────────
    # "gelu":      exact erf-based GELU (HuggingFace BERT)
    # "gelu_tanh": tanh approximation (ggml, some ports)
    hidden_act: str = "gelu"

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head. dim MUST divide evenly."""
        assert self.dim % self.n_heads == 0, (
            f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
        )
        return self.dim // self.n_heads

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation so that a bad config fails here rather
        than as a shape mismatch deep inside graph construction.
        """
        assert self.vocab_size > 0, "vocab_size must be positive"
        assert self.max_seq_len > 0, "max_seq_len must be positive"
        assert self.dim > 0, "dim must be positive"
        assert self.hidden_dim > 0, "hidden_dim must be positive"
        assert self.n_heads > 0, "n_heads must be positive"
        assert self.n_layers > 0, "n_layers must be positive"
        assert self.dim % self.n_heads == 0, (
            f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
        )
        assert self.norm_eps > 0.0, "norm_eps must be positive"
        assert self.type_vocab_size > 0, "type_vocab_size must be positive"
        assert self.hidden_act in ("gelu", "gelu_tanh"), (
            f"hidden_act must be 'gelu' or 'gelu_tanh', got '{self.hidden_act}'"
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (e.g., saving in checkpoints)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """Reconstruct from dictionary (e.g., loading from checkpoints)."""
        return cls(**d)

    @classmethod
    def from_hf_dict(cls, d: dict) -> "ModelConfig":
        """
        Build from a HuggingFace BERT ``config.json`` dictionary.

        Key mapping:
          vocab_size              → vocab_size
          max_position_embeddings → max_seq_len
          hidden_size             → dim
          intermediate_size       → hidden_dim
          num_attention_heads     → n_heads
          num_hidden_layers       → n_layers
          layer_norm_eps          → norm_eps
          type_vocab_size         → type_vocab_size
          hidden_act              → hidden_act ("gelu_new" is the tanh form)
        """
        act = d.get("hidden_act", "gelu")
        if act in ("gelu_new", "gelu_pytorch_tanh", "gelu_tanh"):
            act = "gelu_tanh"
        elif act != "gelu":
            raise ValueError(f"Unsupported hidden_act '{act}' in model config")
        return cls(
            vocab_size=d["vocab_size"],
            max_seq_len=d["max_position_embeddings"],
            dim=d["hidden_size"],
            hidden_dim=d["intermediate_size"],
            n_heads=d["num_attention_heads"],
            n_layers=d["num_hidden_layers"],
            norm_eps=d.get("layer_norm_eps", 1e-12),
            type_vocab_size=d.get("type_vocab_size", 2),
            hidden_act=act,
        )

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass
class EmbedConfig:
    """
    Runtime settings for producing embeddings.

    None of these affect the weights: the same model can be run on CPU in
    float32 today and on CUDA in float16 tomorrow.
    """

    # ── Hardware ───────────────────────────────────────────────────────────
    # "auto" picks CUDA → MPS → CPU. Or name a device explicitly ("cpu").
    device: str = "auto"

    # "auto": float32 everywhere. Half precision has to be asked for, since
    # the attention bias constant must then be scaled down (see below).
    dtype: str = "auto"

    # Thread-count hint handed to the execution facility. On CPU this maps
    # to torch.set_num_threads(); 0 leaves PyTorch's default alone.
    n_threads: int = 0

    # ── Batching ───────────────────────────────────────────────────────────
    # Maximum texts per forward call. None = the whole input list in a
    # single graph. Smaller chunks bound the compute arena size because the
    # graph is sized by the longest sequence in the chunk.
    batch_size: Optional[int] = None

    # Token budget per text (including [CLS]/[SEP]). None = model max.
    max_tokens: Optional[int] = None

    # ── Attention Bias ─────────────────────────────────────────────────────
    # Scale applied to the (mask - 1) outer product. Must drive padded key
    # scores to ~0 after softmax without overflowing the working precision.
    # None = 1e5 for float32/bfloat16, 1e4 for float16 (max ≈ 65504).
    attn_mask_scale: Optional[float] = None

    # ── Memory ─────────────────────────────────────────────────────────────
    # Upper bound on the per-call compute arena. A sizing pass that needs
    # more raises ComputeOutOfMemoryError instead of attempting allocation.
    max_compute_bytes: Optional[int] = None

    # ── Logging ────────────────────────────────────────────────────────────
    # verbose=True also prints tokenizer diagnostics (dropped characters,
    # unknown words) and a line per forward call.
    verbose: bool = False
    log_dir: Optional[str] = None

    def validate(self) -> None:
        """Validate runtime settings."""
        assert self.n_threads >= 0, "n_threads must be >= 0"
        if self.batch_size is not None:
            assert self.batch_size > 0, "batch_size must be positive"
        if self.max_tokens is not None:
            assert self.max_tokens >= 2, (
                "max_tokens must leave room for [CLS] and [SEP]"
            )
        if self.attn_mask_scale is not None:
            assert self.attn_mask_scale > 0.0, "attn_mask_scale must be positive"
        if self.max_compute_bytes is not None:
            assert self.max_compute_bytes > 0, "max_compute_bytes must be positive"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "EmbedConfig":
        """Reconstruct from dictionary."""
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "EmbedConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))
