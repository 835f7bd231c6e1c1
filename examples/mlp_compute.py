#!/usr/bin/env python3
"""Demo: build, compute and dispose a 3-layer MLP with a dynamic batch.

Run with:
    python examples/mlp_compute.py
"""

import asyncio
import logging
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mlgraph import Dynamic, create_context


def build_mlp_graph(ctx, w1, w2, w3):
    """Build a 3-layer MLP whose batch size is bound per compute call."""
    g = ctx.graph_builder("mlp_3layer")

    x = g.input("x", {"dtype": "float32", "dimensions": [Dynamic, 128]})

    # Layer 1: [N, 128] @ [128, 64], with ReLU
    a1 = g.relu(g.matmul(x, g.constant(w1)))
    # Layer 2: [N, 64] @ [64, 32], with ReLU
    a2 = g.relu(g.matmul(a1, g.constant(w2)))
    # Layer 3: [N, 32] @ [32, 32], output layer
    out = g.matmul(a2, g.constant(w3))

    return g.build({"out": out})


def numpy_reference(x, w1, w2, w3):
    h1 = np.maximum(0, x @ w1)
    h2 = np.maximum(0, h1 @ w2)
    return h2 @ w3


async def run(graph, weights):
    for batch in (1, 16, 128):
        x = np.random.randn(batch, 128).astype(np.float32)
        out = np.empty((batch, 32), dtype=np.float32)
        await graph.compute({"x": {"resource": x, "dimensions": [batch, 128]}}, {"out": out})

        expected = numpy_reference(x, *weights)
        max_diff = float(np.max(np.abs(out - expected)))
        status = "OK" if np.allclose(out, expected, rtol=1e-4, atol=1e-4) else "MISMATCH"
        print(f"    batch={batch:<4} max |diff| = {max_diff:.2e}  [{status}]")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    np.random.seed(42)
    weights = [
        (np.random.randn(128, 64) * 0.1).astype(np.float32),
        (np.random.randn(64, 32) * 0.1).astype(np.float32),
        (np.random.randn(32, 32) * 0.1).astype(np.float32),
    ]

    ctx = create_context()
    print("=" * 70)
    print("MLP compute demo")
    print("=" * 70)

    print("\n[1] Building graph...")
    graph = build_mlp_graph(ctx, *weights)
    print(graph.summary())

    print("\n[2] Computing with several batch sizes...")
    asyncio.run(run(graph, weights))
    print(f"    device memory while resident: {ctx.memory()}")

    print("\n[3] Disposing...")
    graph.dispose()
    print(f"    device memory after dispose:  {ctx.memory()}")
    ctx.close()


if __name__ == "__main__":
    main()
