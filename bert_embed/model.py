"""
BERT Encoder Weights and Eager Reference Forward Pass.

This module owns the MODEL PARAMETERS. The production forward pass is built
as a symbolic graph in encoder.py and executed by graph.py; the nn.Module
here is the container those graph nodes reference by name, plus an eager
forward() that computes the same embeddings directly with PyTorch ops.
The two paths must agree to within floating-point tolerance, which is what
the tests check.

SUBMODULE NAMES FOLLOW HUGGINGFACE BERT:
  Parameter names are the exact keys of a HuggingFace BERT checkpoint
  (minus the optional "bert." prefix), so a pretrained state dict loads
  with no key remapping:

    embeddings.word_embeddings.weight
    embeddings.position_embeddings.weight
    embeddings.token_type_embeddings.weight
    embeddings.LayerNorm.{weight,bias}
    encoder.layer.{i}.attention.self.{query,key,value}.{weight,bias}
    encoder.layer.{i}.attention.output.dense.{weight,bias}
    encoder.layer.{i}.attention.output.LayerNorm.{weight,bias}
    encoder.layer.{i}.intermediate.dense.{weight,bias}
    encoder.layer.{i}.output.dense.{weight,bias}
    encoder.layer.{i}.output.LayerNorm.{weight,bias}

ARCHITECTURE (one encoder layer, POST-norm):

    x ──┬──────────────────────────────┐
        │ self-attention (Q, K, V, O)  │
        ▼                              │
       (+) ◄───────────────────────────┘
        │ LayerNorm
        ├──────────────────────────────┐
        │ dense → GELU → dense         │
        ▼                              │
       (+) ◄───────────────────────────┘
        │ LayerNorm
        ▼

  Compare with LLaMA-style PRE-norm, where the norm sits at the start of
  each sublayer and the residual stream itself is never normalized. BERT
  normalizes the residual stream after every add.

POOLING:
  No [CLS] pooler head: sentence embedding models average the final hidden
  states over the real tokens (pool_weights = 1/len on real tokens, 0 on
  padding) and L2-normalize the result.
"""

import json
import os
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F
from safetensors.torch import load_file

from bert_embed.config import ModelConfig
from bert_embed.errors import MissingWeightError
from bert_embed.tokenizer import Vocabulary


# Attention-bias scale used by the eager forward when none is given
DEFAULT_ATTN_MASK_SCALE = 1e5


def attention_bias(valid_mask: torch.Tensor, scale: float) -> torch.Tensor:
    """
    Additive attention bias from a (batch, seq) validity mask.

    bias[b, 0, q, k] = 0       if positions q and k are both real
                     = -scale  otherwise

    Returned as (batch, 1, seq, seq) so it broadcasts over heads.
    """
    pair = valid_mask.unsqueeze(2) * valid_mask.unsqueeze(1)
    return ((pair - 1.0) * scale).unsqueeze(1)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Embeddings
# ═══════════════════════════════════════════════════════════════════════════

class BertEmbeddings(nn.Module):
    """
    Token + token-type + position embeddings, summed and layer-normalized.

    Unlike RoPE, BERT's positions are a LEARNED table: row p is added to
    whatever token sits at position p. The table size is the hard limit on
    sequence length (max_seq_len).

    Token types distinguish sentence A from sentence B in pair tasks. We
    embed single segments only, so every token uses row 0.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.word_embeddings = nn.Embedding(config.vocab_size, config.dim)
        self.position_embeddings = nn.Embedding(config.max_seq_len, config.dim)
        self.token_type_embeddings = nn.Embedding(config.type_vocab_size, config.dim)
        self.LayerNorm = nn.LayerNorm(config.dim, eps=config.norm_eps)

    def forward(self, tokens: torch.Tensor, positions: torch.Tensor) -> torch.Tensor:
        """
        Args:
            tokens: (batch, seq) token ids
            positions: (batch, seq) position ids

        Returns:
            (batch, seq, dim)
        """
        h = self.word_embeddings(tokens)
        h = h + self.token_type_embeddings.weight[0]
        h = h + self.position_embeddings(positions)
        return self.LayerNorm(h)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Self-Attention
# ═══════════════════════════════════════════════════════════════════════════

class BertSelfAttention(nn.Module):
    """
    Bidirectional multi-head attention (every token sees every real token).

    No causal mask and no KV cache: the encoder processes the whole input in
    one pass. Padding is handled by the additive bias from attention_bias(),
    which pushes scores of padded keys down by -scale before the softmax.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.n_heads = config.n_heads
        self.head_dim = config.head_dim
        self.query = nn.Linear(config.dim, config.dim)
        self.key = nn.Linear(config.dim, config.dim)
        self.value = nn.Linear(config.dim, config.dim)

    def forward(self, x: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: (batch, seq, dim)
            bias: (batch, 1, seq, seq) additive attention bias

        Returns:
            (batch, seq, dim) head outputs concatenated (before projection)
        """
        bsz, seq_len, dim = x.shape

        def split_heads(t: torch.Tensor) -> torch.Tensor:
            # (B, L, E) → (B, H, L, head_dim)
            return t.view(bsz, seq_len, self.n_heads, self.head_dim).transpose(1, 2)

        q = split_heads(self.query(x))
        k = split_heads(self.key(x))
        v = split_heads(self.value(x))

        # softmax(Q·Kᵀ / sqrt(head_dim) + bias) · V
        out = F.scaled_dot_product_attention(q, k, v, attn_mask=bias.to(q.dtype))

        return out.transpose(1, 2).contiguous().view(bsz, seq_len, dim)


class BertSelfOutput(nn.Module):
    """Output projection + residual + LayerNorm of the attention sublayer."""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.dense = nn.Linear(config.dim, config.dim)
        self.LayerNorm = nn.LayerNorm(config.dim, eps=config.norm_eps)

    def forward(self, hidden: torch.Tensor, residual: torch.Tensor) -> torch.Tensor:
        return self.LayerNorm(self.dense(hidden) + residual)


class BertAttention(nn.Module):
    def __init__(self, config: ModelConfig):
        super().__init__()
        self.self = BertSelfAttention(config)
        self.output = BertSelfOutput(config)

    def forward(self, x: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
        return self.output(self.self(x, bias), x)


# ═══════════════════════════════════════════════════════════════════════════
# 3. Feed-Forward
# ═══════════════════════════════════════════════════════════════════════════

class BertIntermediate(nn.Module):
    """
    Expansion half of the FFN: dim → hidden_dim, then GELU.

    GELU(x) = x · Φ(x), Φ the standard normal CDF. "gelu_tanh" swaps Φ for
    the tanh approximation some ports use; the difference is ~1e-3 at most.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.dense = nn.Linear(config.dim, config.hidden_dim)
        self.approximate = "tanh" if config.hidden_act == "gelu_tanh" else "none"

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return F.gelu(self.dense(x), approximate=self.approximate)


class BertOutput(nn.Module):
    """Contraction half of the FFN + residual + LayerNorm."""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.dense = nn.Linear(config.hidden_dim, config.dim)
        self.LayerNorm = nn.LayerNorm(config.dim, eps=config.norm_eps)

    def forward(self, hidden: torch.Tensor, residual: torch.Tensor) -> torch.Tensor:
        return self.LayerNorm(self.dense(hidden) + residual)


# ═══════════════════════════════════════════════════════════════════════════
# 4. Encoder Layer and Stack
# ═══════════════════════════════════════════════════════════════════════════

class BertLayer(nn.Module):
    """One post-norm encoder layer: attention sublayer, then FFN sublayer."""

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.attention = BertAttention(config)
        self.intermediate = BertIntermediate(config)
        self.output = BertOutput(config)

    def forward(self, x: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
        h = self.attention(x, bias)
        return self.output(self.intermediate(h), h)


class BertEncoder(nn.Module):
    def __init__(self, config: ModelConfig):
        super().__init__()
        self.layer = nn.ModuleList([BertLayer(config) for _ in range(config.n_layers)])

    def forward(self, x: torch.Tensor, bias: torch.Tensor) -> torch.Tensor:
        for layer in self.layer:
            x = layer(x, bias)
        return x


# ═══════════════════════════════════════════════════════════════════════════
# 5. Full Model
# ═══════════════════════════════════════════════════════════════════════════

class BertModel(nn.Module):
    """
    Pretrained BERT encoder for sentence embeddings.

    Holds the hyperparameters, the vocabulary and the weights. It is
    read-only once loaded: freeze() turns off gradients and puts the
    module in eval mode, after which the same instance can be shared by
    any number of concurrent forward calls.

    Construction:
      - BertModel.from_pretrained("models/all-MiniLM-L6-v2")  HF directory
      - BertModel.from_pretrained("checkpoints/model.pt")     saved checkpoint
      - BertModel(config, vocab)                              random init (tests)
    """

    def __init__(self, config: ModelConfig, vocab: Optional[Vocabulary] = None):
        super().__init__()
        config.validate()
        self.config = config
        self.vocab = vocab

        self.embeddings = BertEmbeddings(config)
        self.encoder = BertEncoder(config)

        self.apply(self._init_weights)

    def _init_weights(self, module: nn.Module) -> None:
        """
        BERT initialization: N(0, 0.02) for linear and embedding weights,
        zero biases, unit LayerNorm scale.

        Only matters for randomly initialized models (tests); pretrained
        weights overwrite all of it.
        """
        if isinstance(module, nn.Linear):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)
            if module.bias is not None:
                nn.init.zeros_(module.bias)
        elif isinstance(module, nn.Embedding):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)
        elif isinstance(module, nn.LayerNorm):
            nn.init.ones_(module.weight)
            nn.init.zeros_(module.bias)

    def freeze(self) -> "BertModel":
        """Make the model read-only for inference."""
        self.requires_grad_(False)
        self.eval()
        return self

    @property
    def dtype(self) -> torch.dtype:
        return self.embeddings.word_embeddings.weight.dtype

    @property
    def device(self) -> torch.device:
        return self.embeddings.word_embeddings.weight.device

    @torch.no_grad()
    def forward(
        self,
        tokens: torch.Tensor,
        positions: torch.Tensor,
        valid_mask: torch.Tensor,
        pool_weights: torch.Tensor,
        attn_mask_scale: float = DEFAULT_ATTN_MASK_SCALE,
    ) -> torch.Tensor:
        """
        Eager forward pass: padded batch → L2-normalized sentence embeddings.

        Args:
            tokens: (batch, seq) token ids
            positions: (batch, seq) position ids
            valid_mask: (batch, seq) 1.0 for real tokens, 0.0 for padding
            pool_weights: (batch, seq) 1/len on real tokens, 0.0 on padding
            attn_mask_scale: Magnitude of the padding bias.

        Returns:
            (batch, dim) embeddings with unit L2 norm.
        """
        dtype = self.dtype

        # ── Step 1: Embeddings ──
        h = self.embeddings(tokens, positions)

        # ── Step 2: Encoder stack with the padding bias ──
        bias = attention_bias(valid_mask.to(dtype), attn_mask_scale)
        h = self.encoder(h, bias)

        # ── Step 3: Mean pooling over real tokens ──
        # (B, 1, L) @ (B, L, E) → (B, 1, E)
        pooled = torch.matmul(pool_weights.to(dtype).unsqueeze(1), h).squeeze(1)

        # ── Step 4: L2 normalization ──
        return pooled / pooled.norm(dim=-1, keepdim=True)

    # ─── Loading ─────────────────────────────────────────────────────────

    def load_weights(self, state_dict: dict) -> None:
        """
        Copy a BERT state dict into this model.

        Accepts the "bert." prefix of BertForXxx checkpoints and ignores
        tensors this encoder does not use (pooler, MLM head,
        position_ids buffers).

        Raises:
            MissingWeightError: If any required tensor is absent.
            ValueError: If a tensor has the wrong shape.
        """
        own = self.state_dict()
        weights = {}
        for name, tensor in state_dict.items():
            if name.startswith("bert."):
                name = name[len("bert."):]
            if name in own:
                weights[name] = tensor

        missing = [name for name in own if name not in weights]
        if missing:
            raise MissingWeightError(missing)

        for name, tensor in weights.items():
            if tuple(tensor.shape) != tuple(own[name].shape):
                raise ValueError(
                    f"Weight '{name}' has shape {tuple(tensor.shape)}, "
                    f"expected {tuple(own[name].shape)}"
                )

        self.load_state_dict(weights, strict=True)

    @classmethod
    def from_pretrained(
        cls,
        path: str,
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
    ) -> "BertModel":
        """
        Load a frozen model from a HuggingFace directory or a checkpoint file.

        HuggingFace directory layout:
          config.json                      hyperparameters
          vocab.txt                        WordPiece vocabulary
          model.safetensors                weights (preferred)
          pytorch_model.bin                weights (fallback)

        Any other path is treated as a checkpoint written by
        utils.save_checkpoint().

        Raises:
            FileNotFoundError: If a required file is absent.
            MissingWeightError: If the weights lack a required tensor.
        """
        device = device or torch.device("cpu")

        if os.path.isdir(path):
            model = cls._from_hf_dir(path)
        elif os.path.isfile(path):
            # Imported here: utils depends on this module
            from bert_embed.utils import load_checkpoint
            model = load_checkpoint(path)
        else:
            raise FileNotFoundError(f"Model not found: {path}")

        return model.to(device=device, dtype=dtype).freeze()

    @classmethod
    def _from_hf_dir(cls, path: str) -> "BertModel":
        config_path = os.path.join(path, "config.json")
        vocab_path = os.path.join(path, "vocab.txt")
        for required in (config_path, vocab_path):
            if not os.path.exists(required):
                raise FileNotFoundError(f"Model directory is missing {required}")

        with open(config_path, "r") as f:
            config = ModelConfig.from_hf_dict(json.load(f))
        vocab = Vocabulary.from_file(vocab_path)

        safetensors_path = os.path.join(path, "model.safetensors")
        bin_path = os.path.join(path, "pytorch_model.bin")
        if os.path.exists(safetensors_path):
            state_dict = load_file(safetensors_path, device="cpu")
        elif os.path.exists(bin_path):
            state_dict = torch.load(bin_path, map_location="cpu", weights_only=True)
        else:
            raise FileNotFoundError(
                f"No weights in {path} (expected model.safetensors or pytorch_model.bin)"
            )

        model = cls(config, vocab)
        model.load_weights({k: v.float() for k, v in state_dict.items()})
        return model
