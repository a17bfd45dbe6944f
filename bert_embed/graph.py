"""
Graph Execution Facility — symbolic compute graphs, memory planning, and
execution on a torch device.

WHY A GRAPH INSTEAD OF PLAIN EAGER PYTORCH?
  An eager forward pass allocates every intermediate activation on demand.
  Here the forward pass is first DESCRIBED as a graph of nodes, and the
  memory for the whole call is planned and reserved up front as ONE arena.
  That gives each call a known, bounded footprint and turns "out of memory
  halfway through layer 5" into a single, early, catchable failure.

TWO-PHASE PROTOCOL (one forward call):

  1. SIZING:   build the graph with Graph(measure=True). Shapes only; any
               attempt to write input data raises GraphError.
               plan_memory() walks the nodes and computes the arena size.
               The sizing graph is then dropped.
  2. EXECUTE:  reserve a ComputeArena of that size, rebuild the IDENTICAL
               graph with Graph(measure=False), write the inputs, and let
               GraphExecutor.compute() evaluate it. Every node result lands
               in its planned arena slot. Outputs are copied out and the
               arena is released in bulk.

NODE ARENA:
  A Graph is an append-only list of Node records. A node handle is just its
  index in that list; inputs refer to earlier handles, so the list order is
  already a valid execution order. Nothing is freed individually: the graph
  is dropped as a whole when the call ends.

MEMORY PLANNING:
  Node kinds:
    - param:   model weights; live outside the arena (owned by the model)
    - views:   reshape / permute / transpose; share their parent's slot
    - others:  own a slot in the arena (inputs included)

  A slot is freed right after the last node that reads it (directly or
  through a view). Freed space is reused best-fit by later nodes, so the
  arena is far smaller than the sum of all activations. A node's own slot
  is allocated BEFORE its inputs are freed, so a result never overlaps the
  data it is computed from.

SHAPE CONVENTION:
  PyTorch row-major: (batch, seq, dim). This is the transpose of ggml's
  [dim, seq, batch] notation; the data layout is the same.
"""

import bisect
import math
from dataclasses import dataclass
from typing import Optional, Sequence

import torch
import torch.nn.functional as F

from bert_embed.errors import ComputeOutOfMemoryError, GraphError


# Byte alignment of every arena slot
ALIGNMENT = 64

# Ops whose result aliases their (first) input
VIEW_OPS = frozenset({"reshape", "permute", "transpose"})


def _aligned(nbytes: int) -> int:
    return (nbytes + ALIGNMENT - 1) // ALIGNMENT * ALIGNMENT


@dataclass(frozen=True)
class Node:
    """One operation in the graph. Immutable once added."""
    op: str
    inputs: tuple
    shape: tuple
    dtype: torch.dtype
    attrs: tuple = ()
    name: str = ""
    contiguous: bool = True

    @property
    def numel(self) -> int:
        return math.prod(self.shape)

    @property
    def nbytes(self) -> int:
        return self.numel * self.dtype.itemsize

    def attr(self, key: str):
        return dict(self.attrs)[key]


def _broadcast_shape(a: tuple, b: tuple) -> tuple:
    try:
        return tuple(torch.broadcast_shapes(a, b))
    except RuntimeError as e:
        raise GraphError(f"Shapes {a} and {b} cannot be broadcast") from e


def _matmul_shape(a: tuple, b: tuple) -> tuple:
    if len(a) < 2 or len(b) < 2:
        raise GraphError(f"matmul needs at least 2-D operands, got {a} and {b}")
    if a[-1] != b[-2]:
        raise GraphError(f"matmul inner dimensions differ: {a} @ {b}")
    return _broadcast_shape(a[:-2], b[:-2]) + (a[-2], b[-1])


# ═══════════════════════════════════════════════════════════════════════════
# 1. Graph: the node arena and its builder API
# ═══════════════════════════════════════════════════════════════════════════

class Graph:
    """
    Symbolic computation graph.

    Builder methods return integer handles. Shapes are inferred (and checked)
    when a node is added, so a malformed graph fails during construction,
    before any memory is reserved.

    Example:
        g = Graph(measure=False)
        x = g.input((2, 4), torch.float32, name="x")
        w = g.param(torch.randn(3, 4), name="w")
        y = g.gelu(g.linear(x, w))      # (2, 3)
        g.set_input(x, torch.randn(2, 4))
    """

    def __init__(self, measure: bool = False):
        """
        Args:
            measure: True for a sizing graph. Sizing graphs accept no input
                     data and cannot be executed.
        """
        self.measure = measure
        self.nodes: list[Node] = []
        self._params: dict[int, torch.Tensor] = {}
        self._input_data: dict[int, torch.Tensor] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def _push(
        self,
        op: str,
        inputs: Sequence[int],
        shape: Sequence[int],
        dtype: torch.dtype,
        name: str = "",
        contiguous: bool = True,
        **attrs,
    ) -> int:
        for h in inputs:
            if not 0 <= h < len(self.nodes):
                raise GraphError(f"{op}: unknown input handle {h}")
        self.nodes.append(Node(
            op=op,
            inputs=tuple(inputs),
            shape=tuple(int(d) for d in shape),
            dtype=dtype,
            attrs=tuple(sorted(attrs.items())),
            name=name,
            contiguous=contiguous,
        ))
        return len(self.nodes) - 1

    def node(self, handle: int) -> Node:
        if not 0 <= handle < len(self.nodes):
            raise GraphError(f"Unknown node handle {handle}")
        return self.nodes[handle]

    def shape(self, handle: int) -> tuple:
        return self.node(handle).shape

    def dtype(self, handle: int) -> torch.dtype:
        return self.node(handle).dtype

    # ── Leaves ────────────────────────────────────────────────────────────

    def input(self, shape: Sequence[int], dtype: torch.dtype, name: str = "") -> int:
        """Declare a per-call input. Its data is written with set_input()."""
        return self._push("input", (), shape, dtype, name=name)

    def set_input(self, handle: int, data: torch.Tensor) -> None:
        """
        Attach data to an input node.

        Raises:
            GraphError: In measure mode, for non-input nodes, or on a shape
                        mismatch.
        """
        if self.measure:
            raise GraphError("Cannot write input data into a sizing graph")
        node = self.node(handle)
        if node.op != "input":
            raise GraphError(f"Node {handle} ({node.op}) is not an input")
        if tuple(data.shape) != node.shape:
            raise GraphError(
                f"Input '{node.name}' expects shape {node.shape}, got {tuple(data.shape)}"
            )
        self._input_data[handle] = data

    def input_data(self, handle: int) -> torch.Tensor:
        try:
            return self._input_data[handle]
        except KeyError:
            raise GraphError(
                f"Input '{self.nodes[handle].name}' was never set"
            ) from None

    def param(self, tensor: torch.Tensor, name: str = "") -> int:
        """Reference a model weight. The tensor is NOT copied."""
        handle = self._push("param", (), tensor.shape, tensor.dtype, name=name)
        self._params[handle] = tensor
        return handle

    def param_data(self, handle: int) -> torch.Tensor:
        return self._params[handle]

    # ── Elementwise ───────────────────────────────────────────────────────

    def add(self, a: int, b: int) -> int:
        return self._push("add", (a, b), _broadcast_shape(self.shape(a), self.shape(b)), self.dtype(a))

    def mul(self, a: int, b: int) -> int:
        return self._push("mul", (a, b), _broadcast_shape(self.shape(a), self.shape(b)), self.dtype(a))

    def div(self, a: int, b: int) -> int:
        return self._push("div", (a, b), _broadcast_shape(self.shape(a), self.shape(b)), self.dtype(a))

    def add_scalar(self, a: int, value: float) -> int:
        return self._push("add_scalar", (a,), self.shape(a), self.dtype(a), value=float(value))

    def scale(self, a: int, factor: float) -> int:
        return self._push("scale", (a,), self.shape(a), self.dtype(a), factor=float(factor))

    def sqr(self, a: int) -> int:
        return self._push("sqr", (a,), self.shape(a), self.dtype(a))

    def sqrt(self, a: int) -> int:
        return self._push("sqrt", (a,), self.shape(a), self.dtype(a))

    def gelu(self, a: int, approximate: str = "none") -> int:
        return self._push("gelu", (a,), self.shape(a), self.dtype(a), approximate=approximate)

    # ── Reductions / normalization ────────────────────────────────────────

    def sum_rows(self, a: int) -> int:
        """Sum over the last dimension, keeping it as size 1."""
        return self._push("sum_rows", (a,), self.shape(a)[:-1] + (1,), self.dtype(a))

    def softmax(self, a: int) -> int:
        """Softmax over the last dimension."""
        return self._push("softmax", (a,), self.shape(a), self.dtype(a))

    def layer_norm(self, x: int, weight: int, bias: int, eps: float) -> int:
        """(x - mean) / sqrt(var + eps) * weight + bias over the last dimension."""
        dim = self.shape(x)[-1]
        if self.shape(weight) != (dim,) or self.shape(bias) != (dim,):
            raise GraphError(
                f"layer_norm affine params must have shape ({dim},), "
                f"got {self.shape(weight)} and {self.shape(bias)}"
            )
        return self._push("layer_norm", (x, weight, bias), self.shape(x), self.dtype(x), eps=float(eps))

    # ── Matrix products ───────────────────────────────────────────────────

    def matmul(self, a: int, b: int) -> int:
        """Batched a @ b with broadcasting over leading dimensions."""
        return self._push("matmul", (a, b), _matmul_shape(self.shape(a), self.shape(b)), self.dtype(a))

    def linear(self, x: int, weight: int, bias: Optional[int] = None) -> int:
        """x @ weight.T + bias, with weight of shape (out, in)."""
        out_dim, in_dim = self.shape(weight)
        if self.shape(x)[-1] != in_dim:
            raise GraphError(
                f"linear: input width {self.shape(x)[-1]} does not match weight {self.shape(weight)}"
            )
        if bias is not None and self.shape(bias) != (out_dim,):
            raise GraphError(f"linear: bias shape {self.shape(bias)} != ({out_dim},)")
        inputs = (x, weight) if bias is None else (x, weight, bias)
        return self._push("linear", inputs, self.shape(x)[:-1] + (out_dim,), self.dtype(x))

    def get_rows(self, table: int, ids: int) -> int:
        """Embedding lookup: rows of table (V, E) selected by integer ids."""
        if len(self.shape(table)) != 2:
            raise GraphError(f"get_rows: table must be 2-D, got {self.shape(table)}")
        return self._push("get_rows", (table, ids), self.shape(ids) + self.shape(table)[1:], self.dtype(table))

    # ── Views and layout ──────────────────────────────────────────────────

    def reshape(self, a: int, shape: Sequence[int]) -> int:
        node = self.node(a)
        shape = tuple(shape)
        if math.prod(shape) != node.numel:
            raise GraphError(f"Cannot reshape {node.shape} into {shape}")
        if not node.contiguous:
            raise GraphError(f"Cannot reshape non-contiguous {node.op} result; insert cont()")
        return self._push("reshape", (a,), shape, node.dtype)

    def permute(self, a: int, dims: Sequence[int]) -> int:
        old = self.shape(a)
        dims = tuple(dims)
        if sorted(dims) != list(range(len(old))):
            raise GraphError(f"Invalid permutation {dims} for shape {old}")
        identity = dims == tuple(range(len(old)))
        return self._push(
            "permute", (a,), tuple(old[d] for d in dims), self.dtype(a),
            contiguous=identity and self.nodes[a].contiguous, dims=dims,
        )

    def transpose(self, a: int, dim0: int, dim1: int) -> int:
        shape = list(self.shape(a))
        shape[dim0], shape[dim1] = shape[dim1], shape[dim0]
        return self._push("transpose", (a,), shape, self.dtype(a), contiguous=False, dim0=dim0, dim1=dim1)

    def cont(self, a: int) -> int:
        """Materialize a (possibly strided) view into its own contiguous slot."""
        return self._push("cont", (a,), self.shape(a), self.dtype(a))

    def describe(self) -> str:
        """One line per node, for debugging."""
        lines = []
        for i, node in enumerate(self.nodes):
            label = f" '{node.name}'" if node.name else ""
            lines.append(
                f"  {i:>4d} {node.op:<11}{label} {node.shape} <- {list(node.inputs)}"
            )
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Memory planning
# ═══════════════════════════════════════════════════════════════════════════

class _FreeListAllocator:
    """
    Offset allocator over a virtual buffer that grows at the top.

    Freed blocks are kept sorted by offset and merged with their neighbours.
    Allocation takes the smallest free block that fits (best fit), otherwise
    extends the top. peak is the high-water mark = required buffer size.
    """

    def __init__(self):
        self.free_blocks: list[tuple[int, int]] = []  # (offset, size), sorted
        self.top = 0
        self.peak = 0

    def alloc(self, size: int) -> int:
        best = None
        for i, (_, block_size) in enumerate(self.free_blocks):
            if block_size >= size and (best is None or block_size < self.free_blocks[best][1]):
                best = i
        if best is not None:
            offset, block_size = self.free_blocks[best]
            if block_size == size:
                del self.free_blocks[best]
            else:
                self.free_blocks[best] = (offset + size, block_size - size)
            return offset

        offset = self.top
        self.top += size
        self.peak = max(self.peak, self.top)
        return offset

    def free(self, offset: int, size: int) -> None:
        if size == 0:
            return
        i = bisect.bisect_left(self.free_blocks, (offset, size))
        self.free_blocks.insert(i, (offset, size))

        # merge with the following block
        if i + 1 < len(self.free_blocks):
            nxt_off, nxt_size = self.free_blocks[i + 1]
            if offset + size == nxt_off:
                self.free_blocks[i] = (offset, size + nxt_size)
                del self.free_blocks[i + 1]
        # merge with the preceding block
        if i > 0:
            prev_off, prev_size = self.free_blocks[i - 1]
            cur_off, cur_size = self.free_blocks[i]
            if prev_off + prev_size == cur_off:
                self.free_blocks[i - 1] = (prev_off, prev_size + cur_size)
                del self.free_blocks[i]
                i -= 1

        # a free block touching the top just lowers the top
        last_off, last_size = self.free_blocks[-1]
        if last_off + last_size == self.top:
            self.top = last_off
            self.free_blocks.pop()


@dataclass
class MemoryPlan:
    """Arena layout for one graph."""
    offsets: dict      # node handle → byte offset (allocating nodes only)
    sizes: dict        # node handle → aligned slot size
    total_bytes: int   # arena size needed

    @property
    def total_mb(self) -> float:
        return self.total_bytes / 1024**2


def plan_memory(graph: Graph, outputs: Sequence[int]) -> MemoryPlan:
    """
    Assign an arena offset to every allocating node of the graph.

    Args:
        graph: The graph (sizing or real; only shapes are read).
        outputs: Handles that must stay alive until the end of execution.

    Returns:
        MemoryPlan whose total_bytes is the arena size the graph needs.
    """
    nodes = graph.nodes

    # Views resolve to the node that owns the storage
    root: list[int] = []
    for i, node in enumerate(nodes):
        root.append(root[node.inputs[0]] if node.op in VIEW_OPS else i)

    last_use: dict[int, int] = {}
    for i, node in enumerate(nodes):
        for h in node.inputs:
            last_use[root[h]] = i
    for h in outputs:
        last_use[root[h]] = len(nodes)

    allocator = _FreeListAllocator()
    offsets: dict[int, int] = {}
    sizes: dict[int, int] = {}

    for i, node in enumerate(nodes):
        if node.op != "param" and node.op not in VIEW_OPS:
            sizes[i] = _aligned(node.nbytes)
            offsets[i] = allocator.alloc(sizes[i])
            if i not in last_use:
                # dead node: nothing reads it
                allocator.free(offsets[i], sizes[i])

        for r in {root[h] for h in node.inputs}:
            if last_use[r] == i and r in offsets:
                allocator.free(offsets[r], sizes[r])

    return MemoryPlan(offsets=offsets, sizes=sizes, total_bytes=allocator.peak)


# ═══════════════════════════════════════════════════════════════════════════
# 3. Compute arena
# ═══════════════════════════════════════════════════════════════════════════

class ComputeArena:
    """
    One contiguous device buffer holding every activation of one call.

    Not shareable between concurrent calls: each forward call reserves its
    own arena and releases it when done.

    Usage:
        with ComputeArena(plan.total_bytes, device) as arena:
            ...
    """

    def __init__(self, nbytes: int, device: torch.device, limit: Optional[int] = None):
        """
        Args:
            nbytes: Arena size from the sizing pass.
            device: Where to allocate.
            limit: Optional cap; larger requests fail without allocating.

        Raises:
            ComputeOutOfMemoryError: If the cap is exceeded or the device
                                     allocation fails.
        """
        self.nbytes = nbytes
        self.device = device
        if limit is not None and nbytes > limit:
            raise ComputeOutOfMemoryError(
                nbytes, str(device), f"exceeds the configured limit of {limit} bytes"
            )
        try:
            self._buffer: Optional[torch.Tensor] = torch.empty(
                max(nbytes, ALIGNMENT), dtype=torch.uint8, device=device
            )
        except RuntimeError as e:
            # torch.OutOfMemoryError and CPU allocator failures are RuntimeErrors
            raise ComputeOutOfMemoryError(nbytes, str(device), str(e)) from e

    def view(self, offset: int, shape: Sequence[int], dtype: torch.dtype) -> torch.Tensor:
        """A typed tensor over bytes [offset, offset + nbytes) of the arena."""
        if self._buffer is None:
            raise GraphError("Compute arena has been released")
        nbytes = math.prod(shape) * dtype.itemsize
        if offset + nbytes > self.nbytes:
            raise GraphError(
                f"Slot [{offset}, {offset + nbytes}) overruns arena of {self.nbytes} bytes"
            )
        return self._buffer[offset:offset + nbytes].view(dtype).view(tuple(shape))

    def release(self) -> None:
        """Free the whole arena at once."""
        self._buffer = None

    @property
    def released(self) -> bool:
        return self._buffer is None

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.release()


# ═══════════════════════════════════════════════════════════════════════════
# 4. Executor
# ═══════════════════════════════════════════════════════════════════════════

def _gelu(node, x):
    return F.gelu(x, approximate=node.attr("approximate"))


def _layer_norm(node, x, weight, bias):
    return F.layer_norm(x, (x.shape[-1],), weight, bias, node.attr("eps"))


def _linear(node, x, weight, bias=None):
    return F.linear(x, weight, bias)


# op name → fn(node, *input_tensors) -> tensor
_KERNELS = {
    "add": lambda node, a, b: a + b,
    "mul": lambda node, a, b: a * b,
    "div": lambda node, a, b: a / b,
    "add_scalar": lambda node, a: a + node.attr("value"),
    "scale": lambda node, a: a * node.attr("factor"),
    "sqr": lambda node, a: a * a,
    "sqrt": lambda node, a: torch.sqrt(a),
    "gelu": _gelu,
    "sum_rows": lambda node, a: a.sum(dim=-1, keepdim=True),
    "softmax": lambda node, a: torch.softmax(a, dim=-1),
    "layer_norm": _layer_norm,
    "matmul": lambda node, a, b: torch.matmul(a, b),
    "linear": _linear,
    "get_rows": lambda node, table, ids: F.embedding(ids, table),
    "reshape": lambda node, a: a.view(node.shape),
    "permute": lambda node, a: a.permute(node.attr("dims")),
    "transpose": lambda node, a: a.transpose(node.attr("dim0"), node.attr("dim1")),
    # copying into the node's own arena slot is what makes it contiguous
    "cont": lambda node, a: a,
}


class GraphExecutor:
    """
    Runs graphs on one torch device.

    Owns backend concerns only: where memory lives, how many threads the
    CPU kernels use. Knows nothing about BERT.
    """

    def __init__(self, device: torch.device, max_compute_bytes: Optional[int] = None):
        self.device = device
        self.max_compute_bytes = max_compute_bytes

    def measure(self, graph: Graph, outputs: Sequence[int]) -> int:
        """Sizing pass: arena bytes the graph needs. Reads shapes only."""
        return plan_memory(graph, outputs).total_bytes

    def allocate(self, nbytes: int) -> ComputeArena:
        """Reserve a compute arena (raises ComputeOutOfMemoryError)."""
        return ComputeArena(nbytes, self.device, limit=self.max_compute_bytes)

    def compute(
        self,
        graph: Graph,
        outputs: Sequence[int],
        arena: ComputeArena,
        n_threads: int = 0,
    ) -> list[torch.Tensor]:
        """
        Execute a real (non-sizing) graph inside the given arena.

        Args:
            graph: Graph built with measure=False and all inputs set.
            outputs: Handles to return.
            arena: Arena at least as large as the graph's plan.
            n_threads: CPU thread hint for this call only (0 = leave PyTorch's
                       setting alone). The previous setting is restored.

        Returns:
            Output tensors, copied out of the arena (safe after release).
        """
        if graph.measure:
            raise GraphError("Cannot execute a sizing graph")

        plan = plan_memory(graph, outputs)
        if plan.total_bytes > arena.nbytes:
            raise GraphError(
                f"Graph needs {plan.total_bytes} bytes but the arena holds {arena.nbytes}; "
                f"the sizing graph did not match the real graph"
            )

        # torch.set_num_threads is process-wide; put the old value back after
        prev_threads = torch.get_num_threads()
        if n_threads > 0 and self.device.type == "cpu":
            torch.set_num_threads(n_threads)

        values: dict[int, torch.Tensor] = {}
        try:
            with torch.no_grad():
                for i, node in enumerate(graph.nodes):
                    if node.op == "param":
                        values[i] = graph.param_data(i)
                        continue

                    if node.op == "input":
                        result = graph.input_data(i)
                    else:
                        result = _KERNELS[node.op](node, *(values[h] for h in node.inputs))

                    if i in plan.offsets:
                        slot = arena.view(plan.offsets[i], node.shape, node.dtype)
                        slot.copy_(result)
                        result = slot
                    values[i] = result

                return [values[h].clone() for h in outputs]
        finally:
            if torch.get_num_threads() != prev_threads:
                torch.set_num_threads(prev_threads)
