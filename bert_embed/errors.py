"""
Exception types raised by the embedding pipeline.

The hierarchy follows the failure taxonomy of the pipeline:

  EmbedderError
    ├── SequenceTooLongError    configuration: batch longer than the model max
    ├── ComputeOutOfMemoryError resource: compute arena cannot be allocated
    ├── MissingWeightError      model: a required weight tensor is absent
    └── GraphError              programmer: graph contract violated

Each subclass also derives from the closest builtin, so callers that only
know about ValueError / MemoryError / KeyError still catch them.

Tokenization anomalies (unknown characters or words) are NOT errors: natural
text is full of them. They are reported through the logger only.
"""


class EmbedderError(Exception):
    """Base exception for all embedder errors."""


class SequenceTooLongError(EmbedderError, ValueError):
    """The longest sequence in a batch exceeds the model's position table."""

    def __init__(self, length: int, max_length: int):
        super().__init__(
            f"Too many tokens: sequence of length {length}, maximum is {max_length}"
        )
        self.length = length
        self.max_length = max_length


class ComputeOutOfMemoryError(EmbedderError, MemoryError):
    """The compute arena for a forward call could not be allocated."""

    def __init__(self, requested_bytes: int, device: str, reason: str = ""):
        msg = (
            f"Cannot allocate compute buffer of {requested_bytes / 1024**2:.2f} MB "
            f"on {device}"
        )
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.requested_bytes = requested_bytes
        self.device = device


class MissingWeightError(EmbedderError, KeyError):
    """A tensor the encoder needs is not present in the loaded weights."""

    def __init__(self, names: list):
        self.names = list(names)
        super().__init__(f"Missing required weight tensors: {', '.join(self.names)}")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


class GraphError(EmbedderError, RuntimeError):
    """Misuse of the compute graph (data writes while sizing, unset inputs)."""
