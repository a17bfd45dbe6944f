"""
Hardware abstraction for running the encoder.

All device-specific logic lives here so that the graph builder, executor
and embedder never branch on hardware. They receive a torch.device and a
torch.dtype and use them as given.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs): fastest for large batches. float32, float16 and
     (Ampere+) bfloat16 all work.
  2. MPS (Apple Silicon): float32 and float16.
  3. CPU: always available. float32 is the practical choice; the thread
     count can be set per call through EmbedConfig.n_threads.

PRECISION FOR INFERENCE:
  Embeddings are compared by cosine similarity, so small numeric drift is
  harmless, but the attention bias constant must fit the dtype:

    float32   max ≈ 3.4e38    bias scale 1e5
    bfloat16  max ≈ 3.4e38    bias scale 1e5 (same exponent range as fp32)
    float16   max ≈ 65504     bias scale 1e4

  "auto" resolves to float32 on every device. Half precision is opt-in.
"""

import torch


def get_device(requested: str = "auto") -> torch.device:
    """
    Resolve a device string.

    Priority for "auto": CUDA → MPS → CPU.

    Args:
        requested: "auto" or any string torch.device() accepts ("cpu",
                   "cuda", "cuda:1", "mps").

    Returns:
        torch.device: The selected device.

    Raises:
        ValueError: If an explicitly requested accelerator is unavailable.
    """
    if requested == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return torch.device("mps")
        else:
            return torch.device("cpu")

    device = torch.device(requested)
    if device.type == "cuda" and not torch.cuda.is_available():
        raise ValueError(f"Device '{requested}' requested but CUDA is not available")
    if device.type == "mps" and not (
        hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
    ):
        raise ValueError(f"Device '{requested}' requested but MPS is not available")
    return device


def get_dtype(requested: str, device: torch.device) -> torch.dtype:
    """
    Resolve a dtype string to a torch.dtype for the given device.

    Args:
        requested: One of "auto", "float16", "bfloat16", "float32".
        device: The target device.

    Returns:
        torch.dtype: The resolved dtype.
    """
    if requested == "auto":
        # float32 everywhere; half precision is opt-in.
        return torch.float32

    dtype_map = {
        "float16": torch.float16,
        "bfloat16": torch.bfloat16,
        "float32": torch.float32,
    }
    if requested not in dtype_map:
        raise ValueError(
            f"Unknown dtype '{requested}'. "
            f"Choose from: {list(dtype_map.keys())} or 'auto'"
        )
    dtype = dtype_map[requested]
    if dtype == torch.bfloat16 and device.type == "cuda" and not torch.cuda.is_bf16_supported():
        raise ValueError(f"bfloat16 is not supported on {device}")
    return dtype


def device_info(device: torch.device) -> str:
    """
    Human-readable description of the device, logged once at model load.

    Returns:
        A multi-line string.
    """
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  BF16 Support: {torch.cuda.is_bf16_supported()}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
        try:
            allocated = torch.mps.driver_allocated_memory() / 1024**3
            lines.append(f"  GPU Memory Allocated: {allocated:.2f} GB")
        except AttributeError:
            lines.append("  GPU Memory: (info not available)")
    else:
        lines.append("  Backend: CPU")
        lines.append(f"  Threads: {torch.get_num_threads()}")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)


def get_memory_usage(device: torch.device) -> dict:
    """
    Current device memory in MB: 'allocated' (live tensors) and 'reserved'
    (held by the caching allocator). Both are 0.0 on CPU, where PyTorch
    does not track allocations.
    """
    if device.type == "cuda":
        return {
            "allocated_mb": torch.cuda.memory_allocated(device) / 1024**2,
            "reserved_mb": torch.cuda.memory_reserved(device) / 1024**2,
        }
    elif device.type == "mps":
        try:
            return {
                "allocated_mb": torch.mps.current_allocated_memory() / 1024**2,
                "reserved_mb": torch.mps.driver_allocated_memory() / 1024**2,
            }
        except AttributeError:
            return {"allocated_mb": 0.0, "reserved_mb": 0.0}
    else:
        return {"allocated_mb": 0.0, "reserved_mb": 0.0}
