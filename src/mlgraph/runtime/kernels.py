"""NumPy reference kernels.

A kernel is a pure function ``(inputs, options) -> outputs`` over dense
row-major arrays. Shapes and dtypes have already been validated by the
catalog rules; kernels only compute.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence

import numpy as np

Kernel = Callable[[Sequence[np.ndarray], Mapping[str, object]], list[np.ndarray]]

KERNELS: dict[str, Kernel] = {}


def kernel(*kinds: str) -> Callable[[Kernel], Kernel]:
    def decorator(fn: Kernel) -> Kernel:
        for kind in kinds:
            KERNELS[kind] = fn
        return fn

    return decorator


def _elementwise(kind: str, fn: Callable[..., np.ndarray]) -> None:
    def run(inputs, options):
        return [np.asarray(fn(*inputs)).astype(inputs[0].dtype, copy=False)]

    KERNELS[kind] = run


for _kind, _fn in {
    "add": np.add,
    "sub": np.subtract,
    "mul": np.multiply,
    "div": np.divide,
    "max": np.maximum,
    "min": np.minimum,
    "pow": np.power,
    "abs": np.abs,
    "neg": np.negative,
    "exp": np.exp,
    "sqrt": np.sqrt,
    "tanh": np.tanh,
    "relu": lambda x: np.maximum(x, 0),
    "sigmoid": lambda x: 1 / (1 + np.exp(-x)),
}.items():
    _elementwise(_kind, _fn)


@kernel("matmul")
def _matmul(inputs, options):
    a, b = inputs
    return [np.matmul(a, b)]


@kernel("transpose")
def _transpose(inputs, options):
    return [np.transpose(inputs[0], options["permutation"])]


@kernel("reshape")
def _reshape(inputs, options):
    return [np.reshape(inputs[0], options["new_shape"])]


@kernel("squeeze")
def _squeeze(inputs, options):
    axes = tuple(options["axes"])
    return [np.squeeze(inputs[0], axis=axes) if axes else inputs[0]]


@kernel("unsqueeze")
def _unsqueeze(inputs, options):
    return [np.expand_dims(inputs[0], tuple(options["axes"]))]


@kernel("slice")
def _slice(inputs, options):
    index = tuple(slice(s, s + n) for s, n in zip(options["starts"], options["sizes"]))
    return [inputs[0][index]]


@kernel("concat")
def _concat(inputs, options):
    return [np.concatenate(inputs, axis=options["axis"])]


@kernel("split")
def _split(inputs, options):
    x = inputs[0]
    splits = options["splits"]
    if isinstance(splits, int):
        return list(np.split(x, splits, axis=options["axis"]))
    return list(np.split(x, np.cumsum(splits)[:-1], axis=options["axis"]))
