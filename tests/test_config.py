"""
Unit tests for configuration.

Tests verify:
  1. Defaults describe all-MiniLM-L6-v2
  2. validate() rejects inconsistent settings
  3. HuggingFace config.json mapping, including activation names
  4. JSON save/load round trips
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.config import EmbedConfig, ModelConfig


MINILM_HF_CONFIG = {
    "architectures": ["BertModel"],
    "attention_probs_dropout_prob": 0.1,
    "hidden_act": "gelu",
    "hidden_dropout_prob": 0.1,
    "hidden_size": 384,
    "initializer_range": 0.02,
    "intermediate_size": 1536,
    "layer_norm_eps": 1e-12,
    "max_position_embeddings": 512,
    "model_type": "bert",
    "num_attention_heads": 12,
    "num_hidden_layers": 6,
    "pad_token_id": 0,
    "position_embedding_type": "absolute",
    "type_vocab_size": 2,
    "vocab_size": 30522,
}


class TestModelConfig:

    def test_defaults(self):
        config = ModelConfig()
        config.validate()
        assert config.dim == 384
        assert config.head_dim == 32
        assert config.n_layers == 6

    def test_heads_must_divide_dim(self):
        with pytest.raises(AssertionError):
            ModelConfig(dim=100, n_heads=12).validate()

    def test_unknown_activation(self):
        with pytest.raises(AssertionError):
            ModelConfig(hidden_act="relu").validate()

    def test_positive_sizes(self):
        with pytest.raises(AssertionError):
            ModelConfig(n_layers=0).validate()

    def test_from_hf_dict(self):
        assert ModelConfig.from_hf_dict(MINILM_HF_CONFIG) == ModelConfig()

    @pytest.mark.parametrize("act", ["gelu_new", "gelu_pytorch_tanh"])
    def test_tanh_gelu_names(self, act):
        config = ModelConfig.from_hf_dict({**MINILM_HF_CONFIG, "hidden_act": act})
        assert config.hidden_act == "gelu_tanh"

    def test_unsupported_hf_activation(self):
        with pytest.raises(ValueError):
            ModelConfig.from_hf_dict({**MINILM_HF_CONFIG, "hidden_act": "silu"})

    def test_save_load(self, tmp_path):
        config = ModelConfig(dim=64, n_heads=4, n_layers=2, hidden_act="gelu_tanh")
        path = str(tmp_path / "sub" / "model_config.json")
        config.save(path)
        assert ModelConfig.load(path) == config

    def test_dict_roundtrip(self):
        config = ModelConfig(vocab_size=1000, max_seq_len=128)
        assert ModelConfig.from_dict(config.to_dict()) == config


class TestEmbedConfig:

    def test_defaults(self):
        config = EmbedConfig()
        config.validate()
        assert config.device == "auto"
        assert config.batch_size is None
        assert config.attn_mask_scale is None

    @pytest.mark.parametrize("field,value", [
        ("n_threads", -1),
        ("batch_size", 0),
        ("max_tokens", 1),
        ("attn_mask_scale", 0.0),
        ("max_compute_bytes", 0),
    ])
    def test_invalid(self, field, value):
        with pytest.raises(AssertionError):
            EmbedConfig(**{field: value}).validate()

    def test_save_load(self, tmp_path):
        config = EmbedConfig(device="cpu", n_threads=2, batch_size=8, verbose=True)
        path = str(tmp_path / "embed_config.json")
        config.save(path)
        assert EmbedConfig.load(path) == config
