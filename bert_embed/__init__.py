"""
bert-embed: Sentence embeddings from pretrained BERT encoders in PyTorch.

Turns raw text into L2-normalized embedding vectors with a BERT-style
encoder such as all-MiniLM-L6-v2 (~22M parameters). The forward pass is
described as a symbolic graph, sized, and executed in a single per-call
memory arena.

Key modules:
  - config:    Model architecture and runtime configuration
  - tokenizer: Text normalization, word segmentation, WordPiece
  - batch:     Padding, positions, validity mask, pooling weights
  - graph:     Graph builder, memory planner, compute arena, executor
  - model:     BERT weights (HuggingFace names) + eager reference forward
  - encoder:   Forward pass as a graph (attention bias, layers, pooler)
  - embedder:  Two-phase sizing/execute protocol and public API
  - device:    Hardware abstraction (CUDA/MPS/CPU)
  - errors:    Exception types
  - utils:     Logging, timing, checkpointing, diagnostics
"""

__version__ = "0.1.0"
