"""
Embedding pipeline: text in, L2-normalized vectors out.

This module ties the pieces together:
  1. Tokenize every input text (normalize → segment → WordPiece)
  2. Assemble the token lists into one padded batch
  3. SIZING pass: build the forward graph in measure mode, compute the
     arena size it needs, and drop it
  4. EXECUTE pass: reserve the arena, rebuild the identical graph with the
     batch data attached, run it, copy the embeddings out
  5. Release the arena

Steps 3-5 run once per forward call. Nothing is carried over between
calls except the frozen model, so independent calls can run concurrently
on the same model (each reserves its own arena).

WHY TWO PASSES?
  The arena size depends on the batch shape (batch size × longest
  sequence), which is only known once the texts are tokenized. Sizing
  first means the call either gets all the memory it will ever need up
  front or fails before doing any work, with a ComputeOutOfMemoryError the
  caller can handle (e.g. by retrying with a smaller batch_size).

Example:
    embedder = Embedder.from_pretrained("models/all-MiniLM-L6-v2")
    vecs = embedder.encode_batch(["a cat", "a dog", "quantum chromodynamics"])
    vecs.shape                # (3, 384)
    float(vecs[0] @ vecs[1])  # cosine similarity (vectors are unit length)
"""

import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from tqdm import tqdm

from bert_embed.batch import assemble_batch
from bert_embed.config import EmbedConfig
from bert_embed.device import device_info, get_device, get_dtype, get_memory_usage
from bert_embed.encoder import build_graph, resolve_attn_mask_scale
from bert_embed.graph import GraphExecutor
from bert_embed.model import BertModel
from bert_embed.tokenizer import Tokenizer
from bert_embed.utils import EmbedLogger, Timer


@dataclass
class EmbedResult:
    """Embeddings plus the metrics of the run that produced them."""
    embeddings: np.ndarray  # (n_texts, dim) float32, unit L2 norm per row
    n_tokens: int           # real tokens across all texts (incl. [CLS]/[SEP])
    max_len: int            # longest token sequence seen
    n_batches: int          # forward calls made
    compute_bytes: int      # largest compute arena reserved
    tokenize_ms: float      # time spent tokenizing (ms)
    compute_ms: float       # time spent in forward calls (ms)
    total_ms: float         # total wall time (ms)
    memory_mb: float        # device memory allocated after the run (0 on CPU)

    @property
    def n_texts(self) -> int:
        return self.embeddings.shape[0]

    @property
    def tokens_per_sec(self) -> float:
        """Forward throughput (real tokens/sec), excluding tokenization."""
        if self.compute_ms <= 0:
            return 0.0
        return self.n_tokens / (self.compute_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of the run."""
        lines = [
            f"Texts          : {self.n_texts}",
            f"Tokens         : {self.n_tokens} (longest {self.max_len})",
            f"Forward calls  : {self.n_batches}",
            f"Compute arena  : {self.compute_bytes / 1024**2:.2f} MB",
            f"Tokenize time  : {self.tokenize_ms:.1f} ms",
            f"Compute time   : {self.compute_ms:.1f} ms",
            f"Throughput     : {self.tokens_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        if self.memory_mb > 0:
            lines.append(f"Device mem     : {self.memory_mb:.1f} MB")
        return "\n".join(lines)


class Embedder:
    """
    Sentence embedder over a frozen BertModel.

    Thread safety: the model and tokenizer are read-only and may be shared.
    Every forward call owns its graph and compute arena.
    """

    def __init__(
        self,
        model: BertModel,
        config: Optional[EmbedConfig] = None,
        logger: Optional[EmbedLogger] = None,
    ):
        """
        Args:
            model: Loaded model with a vocabulary, already on its device.
            config: Runtime settings (EmbedConfig() if None). device/dtype
                    are ignored here; they are applied by from_pretrained().
            logger: Logger for diagnostics (built from config if None).

        Raises:
            ValueError: If the model has no vocabulary or the attention bias
                        scale does not fit the model dtype.
        """
        if model.vocab is None:
            raise ValueError("Embedder needs a model with a vocabulary")

        self.config = config or EmbedConfig()
        self.config.validate()
        self.logger = logger or EmbedLogger(self.config.log_dir, self.config.verbose)

        self.model = model.freeze()
        self.device = model.device
        self.attn_mask_scale = resolve_attn_mask_scale(model.dtype, self.config.attn_mask_scale)

        max_tokens = self.config.max_tokens or model.config.max_seq_len
        self.tokenizer = Tokenizer(model.vocab, max_tokens=max_tokens, logger=self.logger)
        self.executor = GraphExecutor(self.device, self.config.max_compute_bytes)

    @classmethod
    def from_pretrained(
        cls,
        path: str,
        config: Optional[EmbedConfig] = None,
        logger: Optional[EmbedLogger] = None,
    ) -> "Embedder":
        """
        Load a model (HuggingFace directory or checkpoint) onto the device
        and dtype named in config.
        """
        config = config or EmbedConfig()
        config.validate()
        logger = logger or EmbedLogger(config.log_dir, config.verbose)

        device = get_device(config.device)
        dtype = get_dtype(config.dtype, device)
        model = BertModel.from_pretrained(path, device=device, dtype=dtype)

        c = model.config
        logger.log_info(
            f"Loaded {path}: {c.n_layers} layers, dim {c.dim}, {c.n_heads} heads, "
            f"vocab {len(model.vocab)}, max {c.max_seq_len} tokens, {dtype}"
        )
        logger.log_info(device_info(device))
        return cls(model, config, logger)

    @property
    def dim(self) -> int:
        """Length of every embedding vector."""
        return self.model.config.dim

    def tokenize(self, text: str) -> list[int]:
        """Token ids for one text, framed by [CLS] ... [SEP]."""
        return self.tokenizer.tokenize(text)

    # ─── Forward calls on token ids ──────────────────────────────────────

    def forward(self, tokens: Sequence[int]) -> np.ndarray:
        """Embed one token sequence. Returns a (dim,) array."""
        return self.forward_batch([tokens])[0]

    def forward_batch(self, sequences: Sequence[Sequence[int]]) -> np.ndarray:
        """
        Embed token sequences in ONE forward call (no chunking).

        Returns:
            (len(sequences), dim) float32 array.

        Raises:
            SequenceTooLongError: If a sequence exceeds the model maximum.
            ComputeOutOfMemoryError: If the compute arena cannot be reserved.
        """
        if len(sequences) == 0:
            return np.empty((0, self.dim), dtype=np.float32)
        embeddings, _, _ = self._run(sequences)
        return embeddings

    def _run(self, sequences: Sequence[Sequence[int]]) -> tuple[np.ndarray, int, float]:
        """
        One forward call through the two-phase protocol.

        Returns:
            (embeddings, arena_bytes, elapsed_ms)
        """
        batch = assemble_batch(
            sequences,
            pad_id=self.tokenizer.cls_id,
            max_seq_len=self.model.config.max_seq_len,
        )

        with Timer("forward", self.device) as timer:
            # ── Phase 1: sizing ──
            sizing_graph, out = build_graph(
                self.model, batch, measure=True, attn_mask_scale=self.attn_mask_scale
            )
            nbytes = self.executor.measure(sizing_graph, [out])
            del sizing_graph

            # ── Phase 2: execute ──
            with self.executor.allocate(nbytes) as arena:
                graph, out = build_graph(
                    self.model, batch, measure=False, attn_mask_scale=self.attn_mask_scale
                )
                (embeddings,) = self.executor.compute(
                    graph, [out], arena, n_threads=self.config.n_threads
                )
                del graph

        self.logger.log_batch(
            batch.batch_size, batch.max_len, batch.n_tokens, nbytes / 1024**2, timer.elapsed_ms
        )
        return embeddings.float().cpu().numpy(), nbytes, timer.elapsed_ms

    # ─── Text entry points ───────────────────────────────────────────────

    def encode(self, text: str) -> np.ndarray:
        """Embed one text. Returns a (dim,) array with unit L2 norm."""
        return self.forward(self.tokenize(text))

    def encode_batch(self, texts: Sequence[str], show_progress: bool = False) -> np.ndarray:
        """
        Embed many texts.

        With config.batch_size set, texts are processed in chunks of that
        size (one forward call each); otherwise in a single call.

        Returns:
            (len(texts), dim) float32 array, row i for texts[i].
        """
        return self.encode_with_stats(texts, show_progress=show_progress).embeddings

    def encode_with_stats(self, texts: Sequence[str], show_progress: bool = False) -> EmbedResult:
        """encode_batch() plus timing and memory metrics."""
        t_start = time.perf_counter()

        sequences = [self.tokenize(text) for text in texts]
        t_tokenized = time.perf_counter()

        chunk = self.config.batch_size or max(len(sequences), 1)
        outputs = []
        compute_bytes = 0
        compute_ms = 0.0
        n_batches = 0

        for start in tqdm(
            range(0, len(sequences), chunk),
            desc="Embedding",
            unit="batch",
            disable=not show_progress,
        ):
            embeddings, nbytes, elapsed_ms = self._run(sequences[start:start + chunk])
            outputs.append(embeddings)
            compute_bytes = max(compute_bytes, nbytes)
            compute_ms += elapsed_ms
            n_batches += 1

        if outputs:
            embeddings = np.concatenate(outputs, axis=0)
        else:
            embeddings = np.empty((0, self.dim), dtype=np.float32)

        return EmbedResult(
            embeddings=embeddings,
            n_tokens=sum(len(seq) for seq in sequences),
            max_len=max((len(seq) for seq in sequences), default=0),
            n_batches=n_batches,
            compute_bytes=compute_bytes,
            tokenize_ms=(t_tokenized - t_start) * 1000,
            compute_ms=compute_ms,
            total_ms=(time.perf_counter() - t_start) * 1000,
            memory_mb=get_memory_usage(self.device)["allocated_mb"],
        )

    def close(self) -> None:
        self.logger.close()
