"""
Unit tests for the BERT model and the forward graph.

Tests verify:
  1. Parameter names match HuggingFace BERT; parameter count is 22,565,376
  2. The graph forward pass matches the eager nn.Module forward
  3. Output embeddings have unit L2 norm
  4. Padding never changes a sequence's embedding (batch invariance)
  5. Attention bias values and the float16 scale limit
  6. Weight loading: prefix handling, missing and mis-shaped tensors,
     HuggingFace directories (safetensors and .bin), checkpoints
"""

import sys
import os
import json

import pytest
import torch
from safetensors.torch import save_file

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.batch import assemble_batch
from bert_embed.config import ModelConfig
from bert_embed.encoder import (
    ATTN_MASK_SCALE,
    ATTN_MASK_SCALE_FP16,
    build_attention_bias,
    build_graph,
    resolve_attn_mask_scale,
)
from bert_embed.errors import MissingWeightError
from bert_embed.graph import Graph, GraphExecutor
from bert_embed.model import BertModel, attention_bias
from bert_embed.tokenizer import CLS_ID, SEP_ID
from bert_embed.utils import count_parameters, save_checkpoint, set_seed


CPU = torch.device("cpu")


def random_sequences(lengths, vocab_size, seed=0):
    gen = torch.Generator().manual_seed(seed)
    seqs = []
    for n in lengths:
        body = torch.randint(104, vocab_size, (n - 2,), generator=gen).tolist()
        seqs.append([CLS_ID] + body + [SEP_ID])
    return seqs


def graph_forward(model, batch):
    """Two-phase execution of the forward graph."""
    executor = GraphExecutor(CPU)
    sizing, out = build_graph(model, batch, measure=True)
    nbytes = executor.measure(sizing, [out])
    with executor.allocate(nbytes) as arena:
        graph, out = build_graph(model, batch, measure=False)
        (embeddings,) = executor.compute(graph, [out], arena)
    return embeddings


def eager_forward(model, batch):
    return model(batch.tokens, batch.positions, batch.valid_mask, batch.pool_weights)


def hf_config_dict(config: ModelConfig) -> dict:
    return {
        "architectures": ["BertModel"],
        "vocab_size": config.vocab_size,
        "max_position_embeddings": config.max_seq_len,
        "hidden_size": config.dim,
        "intermediate_size": config.hidden_dim,
        "num_attention_heads": config.n_heads,
        "num_hidden_layers": config.n_layers,
        "layer_norm_eps": config.norm_eps,
        "type_vocab_size": config.type_vocab_size,
        "hidden_act": "gelu",
    }


def write_hf_dir(path, model, weights_format="safetensors"):
    """Lay out a model the way a HuggingFace snapshot does."""
    os.makedirs(path, exist_ok=True)
    with open(os.path.join(path, "config.json"), "w") as f:
        json.dump(hf_config_dict(model.config), f)
    with open(os.path.join(path, "vocab.txt"), "w", encoding="utf-8") as f:
        f.write("\n".join(model.vocab.tokens) + "\n")

    # Real checkpoints carry the "bert." prefix and a pooler head
    state = {f"bert.{k}": v.clone() for k, v in model.state_dict().items()}
    state["bert.pooler.dense.weight"] = torch.zeros(model.config.dim, model.config.dim)
    if weights_format == "safetensors":
        save_file(state, os.path.join(path, "model.safetensors"))
    else:
        torch.save(state, os.path.join(path, "pytorch_model.bin"))


class TestArchitecture:

    def test_parameter_count(self):
        """all-MiniLM-L6-v2 defaults give exactly 22,565,376 parameters."""
        model = BertModel(ModelConfig())
        assert count_parameters(model) == 22_565_376

    def test_hf_parameter_names(self, tiny_model):
        names = set(dict(tiny_model.named_parameters()))
        assert "embeddings.word_embeddings.weight" in names
        assert "embeddings.LayerNorm.bias" in names
        assert "encoder.layer.1.attention.self.query.weight" in names
        assert "encoder.layer.0.attention.output.LayerNorm.weight" in names
        assert "encoder.layer.1.intermediate.dense.bias" in names
        assert "encoder.layer.0.output.dense.weight" in names

    def test_freeze(self, tiny_model):
        assert not tiny_model.training
        assert all(not p.requires_grad for p in tiny_model.parameters())

    def test_invalid_config(self, vocab):
        with pytest.raises(AssertionError):
            BertModel(ModelConfig(dim=30, n_heads=4), vocab)


class TestGraphMatchesEager:

    @pytest.mark.parametrize("lengths", [[5], [3, 9, 6], [2, 16, 2, 11]])
    def test_equivalence(self, tiny_model, tiny_config, lengths):
        batch = assemble_batch(
            random_sequences(lengths, tiny_config.vocab_size), CLS_ID, tiny_config.max_seq_len
        )
        graph_out = graph_forward(tiny_model, batch)
        eager_out = eager_forward(tiny_model, batch)
        assert graph_out.shape == (len(lengths), tiny_config.dim)
        assert torch.allclose(graph_out, eager_out, atol=1e-5)

    def test_gelu_tanh(self, tiny_config, vocab):
        tiny_config.hidden_act = "gelu_tanh"
        set_seed(1)
        model = BertModel(tiny_config, vocab).freeze()
        batch = assemble_batch(random_sequences([4, 7], tiny_config.vocab_size), CLS_ID, 16)
        assert torch.allclose(graph_forward(model, batch), eager_forward(model, batch), atol=1e-5)

    def test_unit_norm(self, tiny_model, tiny_config):
        batch = assemble_batch(random_sequences([3, 8, 5], tiny_config.vocab_size), CLS_ID, 16)
        norms = graph_forward(tiny_model, batch).norm(dim=-1)
        assert torch.allclose(norms, torch.ones(3), atol=1e-5)

    def test_padding_invariance(self, tiny_model, tiny_config):
        """A sequence embeds the same alone and padded inside a longer batch."""
        seqs = random_sequences([4, 12, 7], tiny_config.vocab_size, seed=3)
        together = graph_forward(tiny_model, assemble_batch(seqs, CLS_ID, 16))
        for i, seq in enumerate(seqs):
            alone = graph_forward(tiny_model, assemble_batch([seq], CLS_ID, 16))
            assert torch.allclose(together[i], alone[0], atol=1e-5)

    def test_pad_token_id_irrelevant(self, tiny_model, tiny_config):
        """Padded slots are masked; the id written there changes nothing."""
        seqs = random_sequences([3, 9], tiny_config.vocab_size)
        a = assemble_batch(seqs, CLS_ID, 16)
        b = assemble_batch(seqs, 0, 16)
        assert torch.allclose(graph_forward(tiny_model, a), graph_forward(tiny_model, b), atol=1e-6)

    def test_missing_weight(self, tiny_model, tiny_config):
        tiny_model.encoder.layer[1].intermediate.dense.register_parameter("bias", None)
        batch = assemble_batch(random_sequences([4], tiny_config.vocab_size), CLS_ID, 16)
        with pytest.raises(MissingWeightError) as excinfo:
            build_graph(tiny_model, batch, measure=True)
        assert "encoder.layer.1.intermediate.dense.bias" in str(excinfo.value)

    def test_sizing_graph_has_no_data(self, tiny_model, tiny_config):
        batch = assemble_batch(random_sequences([4, 6], tiny_config.vocab_size), CLS_ID, 16)
        sizing, _ = build_graph(tiny_model, batch, measure=True)
        real, _ = build_graph(tiny_model, batch, measure=False)
        assert sizing.measure and not real.measure
        assert [n.shape for n in sizing.nodes] == [n.shape for n in real.nodes]
        assert [n.op for n in sizing.nodes] == [n.op for n in real.nodes]


class TestAttentionBias:

    def test_values(self):
        mask = torch.tensor([[1.0, 1.0, 0.0]])
        bias = attention_bias(mask, 100.0)
        assert bias.shape == (1, 1, 3, 3)
        expected = torch.tensor([
            [0.0, 0.0, -100.0],
            [0.0, 0.0, -100.0],
            [-100.0, -100.0, -100.0],
        ])
        assert torch.equal(bias[0, 0], expected)

    def test_graph_matches_eager(self):
        mask = torch.tensor([[1.0, 1.0, 1.0, 0.0], [1.0, 0.0, 0.0, 0.0]])
        g = Graph()
        m = g.input((2, 4, 1), torch.float32)
        g.set_input(m, mask.unsqueeze(2))
        out = build_attention_bias(g, m, ATTN_MASK_SCALE)
        executor = GraphExecutor(CPU)
        with executor.allocate(executor.measure(g, [out])) as arena:
            (bias,) = executor.compute(g, [out], arena)
        assert torch.equal(bias, attention_bias(mask, ATTN_MASK_SCALE))

    def test_scale_defaults(self):
        assert resolve_attn_mask_scale(torch.float32) == ATTN_MASK_SCALE
        assert resolve_attn_mask_scale(torch.bfloat16) == ATTN_MASK_SCALE
        assert resolve_attn_mask_scale(torch.float16) == ATTN_MASK_SCALE_FP16
        assert resolve_attn_mask_scale(torch.float32, 50.0) == 50.0

    def test_scale_overflowing_float16(self):
        with pytest.raises(ValueError):
            resolve_attn_mask_scale(torch.float16, 1e5)

    def test_scale_must_be_positive(self):
        with pytest.raises(ValueError):
            resolve_attn_mask_scale(torch.float32, 0.0)


class TestLoading:

    def test_load_weights_roundtrip(self, tiny_model, tiny_config, vocab):
        other = BertModel(tiny_config, vocab)
        state = {f"bert.{k}": v for k, v in tiny_model.state_dict().items()}
        state["cls.predictions.bias"] = torch.zeros(tiny_config.vocab_size)
        other.load_weights(state)
        for name, tensor in tiny_model.state_dict().items():
            assert torch.equal(other.state_dict()[name], tensor)

    def test_load_weights_missing(self, tiny_model, tiny_config, vocab):
        state = dict(tiny_model.state_dict())
        del state["encoder.layer.0.output.LayerNorm.weight"]
        with pytest.raises(MissingWeightError) as excinfo:
            BertModel(tiny_config, vocab).load_weights(state)
        assert excinfo.value.names == ["encoder.layer.0.output.LayerNorm.weight"]

    def test_load_weights_wrong_shape(self, tiny_model, tiny_config, vocab):
        state = dict(tiny_model.state_dict())
        state["embeddings.LayerNorm.bias"] = torch.zeros(tiny_config.dim + 1)
        with pytest.raises(ValueError):
            BertModel(tiny_config, vocab).load_weights(state)

    @pytest.mark.parametrize("weights_format", ["safetensors", "bin"])
    def test_from_hf_dir(self, tmp_path, tiny_model, tiny_config, weights_format):
        path = str(tmp_path / "model")
        write_hf_dir(path, tiny_model, weights_format)
        loaded = BertModel.from_pretrained(path)

        assert loaded.config == tiny_config
        assert loaded.vocab.tokens == tiny_model.vocab.tokens
        batch = assemble_batch(random_sequences([5, 3], tiny_config.vocab_size), CLS_ID, 16)
        assert torch.allclose(eager_forward(loaded, batch), eager_forward(tiny_model, batch), atol=1e-6)

    def test_from_hf_dir_without_weights(self, tmp_path, tiny_model):
        path = str(tmp_path / "model")
        write_hf_dir(path, tiny_model)
        os.remove(os.path.join(path, "model.safetensors"))
        with pytest.raises(FileNotFoundError):
            BertModel.from_pretrained(path)

    def test_from_checkpoint(self, tmp_path, tiny_model, tiny_config):
        path = str(tmp_path / "ckpt" / "model.pt")
        save_checkpoint(tiny_model, path)
        loaded = BertModel.from_pretrained(path)
        assert not loaded.training
        batch = assemble_batch(random_sequences([6], tiny_config.vocab_size), CLS_ID, 16)
        assert torch.allclose(eager_forward(loaded, batch), eager_forward(tiny_model, batch), atol=1e-6)

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BertModel.from_pretrained(str(tmp_path / "nothing"))

    def test_half_precision(self, tmp_path, tiny_model, tiny_config):
        path = str(tmp_path / "model")
        write_hf_dir(path, tiny_model)
        loaded = BertModel.from_pretrained(path, dtype=torch.bfloat16)
        assert loaded.dtype == torch.bfloat16
