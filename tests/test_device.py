"""
Unit tests for device and dtype selection.

Tests verify:
  1. Explicit CPU selection and "auto" always yield a usable device
  2. dtype strings resolve, "auto" is float32, unknown names are rejected
  3. Unavailable accelerators are reported instead of silently replaced
"""

import sys
import os

import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bert_embed.device import device_info, get_device, get_dtype, get_memory_usage


CPU = torch.device("cpu")


class TestDevice:

    def test_cpu(self):
        assert get_device("cpu") == CPU

    def test_auto(self):
        assert get_device("auto").type in ("cpu", "cuda", "mps")

    @pytest.mark.skipif(torch.cuda.is_available(), reason="CUDA present")
    def test_missing_cuda(self):
        with pytest.raises(ValueError):
            get_device("cuda")

    def test_cpu_info(self):
        info = device_info(CPU)
        assert info.startswith("Device: cpu")
        assert "Threads:" in info

    def test_cpu_memory_untracked(self):
        assert get_memory_usage(CPU) == {"allocated_mb": 0.0, "reserved_mb": 0.0}


class TestDtype:

    def test_auto_is_float32(self):
        assert get_dtype("auto", CPU) == torch.float32

    @pytest.mark.parametrize("name,dtype", [
        ("float32", torch.float32),
        ("float16", torch.float16),
        ("bfloat16", torch.bfloat16),
    ])
    def test_names(self, name, dtype):
        assert get_dtype(name, CPU) == dtype

    def test_unknown(self):
        with pytest.raises(ValueError):
            get_dtype("int8", CPU)
