"""
Unit tests for the embedding pipeline (Embedder).

Tests verify:
  1. Output shape, dtype and unit L2 norm
  2. Determinism and batch invariance (alone vs. in a batch vs. chunked)
  3. encode() agrees with the eager model forward
  4. Error surfacing: too many tokens, compute memory limit, missing weights
  5. Metrics in EmbedResult and logging of tokenizer diagnostics
"""

import sys
import os

import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.batch import assemble_batch
from bert_embed.config import EmbedConfig
from bert_embed.embedder import Embedder
from bert_embed.errors import (
    ComputeOutOfMemoryError,
    MissingWeightError,
    SequenceTooLongError,
)
from bert_embed.model import BertModel
from bert_embed.tokenizer import CLS_ID, SEP_ID
from bert_embed.utils import EmbedLogger, save_checkpoint


TEXTS = [
    "The cat sat on the mat.",
    "A dog ran!",
    "Unaffable running dogs",
    "Café au lait, s'il vous plaît",
    "你好 world",
    "",
]


@pytest.fixture
def embedder(tiny_model, recording_logger):
    return Embedder(tiny_model, EmbedConfig(), logger=recording_logger)


class TestOutputs:

    def test_shape_and_dtype(self, embedder, tiny_config):
        vecs = embedder.encode_batch(TEXTS)
        assert vecs.shape == (len(TEXTS), tiny_config.dim)
        assert vecs.dtype == np.float32

    def test_unit_norm(self, embedder):
        norms = np.linalg.norm(embedder.encode_batch(TEXTS), axis=1)
        np.testing.assert_allclose(norms, 1.0, atol=1e-5)

    def test_single_text(self, embedder, tiny_config):
        vec = embedder.encode("the cat")
        assert vec.shape == (tiny_config.dim,)
        assert abs(np.linalg.norm(vec) - 1.0) < 1e-5

    def test_empty_list(self, embedder, tiny_config):
        vecs = embedder.encode_batch([])
        assert vecs.shape == (0, tiny_config.dim)
        assert embedder.forward_batch([]).shape == (0, tiny_config.dim)

    def test_dim(self, embedder, tiny_config):
        assert embedder.dim == tiny_config.dim

    def test_different_texts_differ(self, embedder):
        a, b = embedder.encode_batch(["the cat sat", "hello world"])
        assert not np.allclose(a, b)


class TestInvariance:

    def test_deterministic(self, embedder):
        np.testing.assert_array_equal(embedder.encode_batch(TEXTS), embedder.encode_batch(TEXTS))

    def test_alone_vs_batched(self, embedder):
        batched = embedder.encode_batch(TEXTS)
        for i, text in enumerate(TEXTS):
            np.testing.assert_allclose(embedder.encode(text), batched[i], atol=1e-5)

    @pytest.mark.parametrize("batch_size", [1, 2, 4])
    def test_chunking(self, tiny_model, recording_logger, batch_size):
        whole = Embedder(tiny_model, EmbedConfig(), logger=recording_logger).encode_batch(TEXTS)
        chunked = Embedder(
            tiny_model, EmbedConfig(batch_size=batch_size), logger=recording_logger
        ).encode_batch(TEXTS)
        np.testing.assert_allclose(chunked, whole, atol=1e-5)

    def test_matches_eager_model(self, embedder, tiny_model):
        seqs = [embedder.tokenize(t) for t in TEXTS]
        batch = assemble_batch(seqs, CLS_ID, tiny_model.config.max_seq_len)
        eager = tiny_model(batch.tokens, batch.positions, batch.valid_mask, batch.pool_weights)
        np.testing.assert_allclose(embedder.encode_batch(TEXTS), eager.numpy(), atol=1e-5)

    def test_forward_on_token_ids(self, embedder):
        ids = embedder.tokenize("the cat sat on the mat")
        np.testing.assert_allclose(
            embedder.forward(ids), embedder.encode("the cat sat on the mat"), atol=1e-6
        )


class TestTruncation:

    def test_default_budget_is_model_max(self, embedder, tiny_config):
        long_text = "the cat sat on the mat " * 10
        ids = embedder.tokenize(long_text)
        assert len(ids) == tiny_config.max_seq_len
        assert ids[0] == CLS_ID and ids[-1] == SEP_ID
        embedder.encode(long_text)

    def test_max_tokens_setting(self, tiny_model, recording_logger):
        emb = Embedder(tiny_model, EmbedConfig(max_tokens=5), logger=recording_logger)
        assert len(emb.tokenize("the cat sat on the mat")) == 5


class TestErrors:

    def test_too_many_tokens(self, tiny_model, recording_logger):
        """A token budget above the model maximum fails at batch assembly."""
        emb = Embedder(tiny_model, EmbedConfig(max_tokens=64), logger=recording_logger)
        with pytest.raises(SequenceTooLongError):
            emb.encode("the cat sat on the mat " * 10)

    def test_forward_too_long(self, embedder, tiny_config):
        ids = [CLS_ID] + [104] * tiny_config.max_seq_len + [SEP_ID]
        with pytest.raises(SequenceTooLongError):
            embedder.forward(ids)

    def test_compute_memory_limit(self, tiny_model, recording_logger):
        emb = Embedder(tiny_model, EmbedConfig(max_compute_bytes=1024), logger=recording_logger)
        with pytest.raises(ComputeOutOfMemoryError):
            emb.encode_batch(TEXTS)

    def test_smaller_chunks_fit_the_limit(self, tiny_model, recording_logger):
        """The arena size follows the batch shape, so chunking bounds it."""
        probe = Embedder(tiny_model, EmbedConfig(batch_size=1), logger=recording_logger)
        per_text = probe.encode_with_stats(TEXTS).compute_bytes
        whole = Embedder(tiny_model, EmbedConfig(), logger=recording_logger)
        assert whole.encode_with_stats(TEXTS).compute_bytes > per_text

        limited = Embedder(
            tiny_model,
            EmbedConfig(batch_size=1, max_compute_bytes=per_text),
            logger=recording_logger,
        )
        assert limited.encode_batch(TEXTS).shape[0] == len(TEXTS)

    def test_missing_weight(self, tiny_model, recording_logger):
        tiny_model.encoder.layer[0].attention.self.key.register_parameter("weight", None)
        emb = Embedder(tiny_model, EmbedConfig(), logger=recording_logger)
        with pytest.raises(MissingWeightError):
            emb.encode("the cat")

    def test_attn_scale_checked_against_dtype(self, tiny_model, recording_logger):
        half = tiny_model.to(torch.float16)
        with pytest.raises(ValueError):
            Embedder(half, EmbedConfig(attn_mask_scale=1e5), logger=recording_logger)

    def test_model_without_vocab(self, tiny_config):
        with pytest.raises(ValueError):
            Embedder(BertModel(tiny_config))


class TestStatsAndLogging:

    def test_encode_with_stats(self, tiny_model, recording_logger):
        emb = Embedder(tiny_model, EmbedConfig(batch_size=4), logger=recording_logger)
        result = emb.encode_with_stats(TEXTS)
        seqs = [emb.tokenize(t) for t in TEXTS]
        assert result.n_texts == len(TEXTS)
        assert result.n_batches == 2
        assert result.n_tokens == sum(len(s) for s in seqs)
        assert result.max_len == max(len(s) for s in seqs)
        assert result.compute_bytes > 0
        assert result.total_ms >= result.compute_ms
        assert "Forward calls  : 2" in result.stats_string()

    def test_tokenizer_diagnostics_logged(self, embedder, recording_logger):
        embedder.encode("xyz")
        assert any("unknown word" in m for m in recording_logger.debug)

    def test_verbose_logger_prints(self, tiny_model, capsys):
        emb = Embedder(tiny_model, EmbedConfig(verbose=True))
        emb.encode("xyz")
        out = capsys.readouterr().out
        assert "[DEBUG] tokenize: unknown word 'xyz'" in out
        assert "batch    1 x   3" in out

    def test_quiet_logger(self, tiny_model, capsys):
        Embedder(tiny_model, EmbedConfig()).encode("xyz")
        assert capsys.readouterr().out == ""

    def test_log_file(self, tmp_path, tiny_model):
        logger = EmbedLogger(log_dir=str(tmp_path), verbose=True)
        Embedder(tiny_model, EmbedConfig(), logger=logger).encode("xyz")
        logger.close()
        (log_path,) = list(tmp_path.iterdir())
        assert "unknown word" in log_path.read_text()


class TestFromPretrained:

    def test_checkpoint(self, tmp_path, tiny_model, recording_logger):
        path = str(tmp_path / "model.pt")
        save_checkpoint(tiny_model, path)
        config = EmbedConfig(device="cpu")
        emb = Embedder.from_pretrained(path, config, logger=recording_logger)
        assert emb.device.type == "cpu"
        assert any("2 layers" in m for m in recording_logger.info)
        np.testing.assert_allclose(
            emb.encode_batch(TEXTS),
            Embedder(tiny_model, config, logger=recording_logger).encode_batch(TEXTS),
            atol=1e-6,
        )
