"""Gated recurrent unit, unrolled into catalog primitives.

The step count is a construction-time constant: every step of every direction
becomes its own chain of matmul/elementwise nodes, so the compiled graph needs
no control flow.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import IncompatibleShape, InvalidOption
from .op import merge_dim
from .operand import Operand, format_shape

if TYPE_CHECKING:
	from .builder import GraphBuilder

LAYOUTS = {"zrn": ("z", "r", "n"), "rzn": ("r", "z", "n")}
DIRECTIONS = {"forward": ("forward",), "backward": ("backward",), "both": ("forward", "backward")}

Gates = dict[str, Operand]


def _positive(value: object, name: str) -> int:
	if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
		raise InvalidOption(f"gru: {name} must be a positive int, got {value!r}")
	return value


def _expect(t: Operand | None, rank: int, dims: dict[int, object], what: str) -> None:
	"""Check rank and the listed dimensions of a statically declared operand."""

	if t is None:
		return
	if t.rank != rank:
		raise IncompatibleShape(f"{what} must have rank {rank}, got {format_shape(t.shape)}")
	for axis, expected in dims.items():
		merge_dim(t.shape[axis], expected, f"{what} {format_shape(t.shape)} axis {axis}")


def _gates(b: GraphBuilder, t: Operand, layout: str) -> Gates:
	return dict(zip(LAYOUTS[layout], b.split(t, 3, axis=0)))


def _per_direction(b: GraphBuilder, t: Operand | None, num_directions: int) -> list[Operand | None]:
	if t is None:
		return [None] * num_directions
	return [b.squeeze(part, axes=[0]) for part in b.split(t, num_directions, axis=0)]


def _step(
	b: GraphBuilder,
	x: Operand,
	w: Gates,
	rw: Gates,
	bias: Gates | None,
	rbias: Gates | None,
	h: Operand | None,
	reset_after: bool,
) -> Operand:
	"""One GRU step; ``w``/``rw`` hold transposed per-gate weights.

	``h`` of None stands for an all-zero hidden state.
	"""

	def plus(a: Operand, c: Operand | None) -> Operand:
		return a if c is None else b.add(a, c)

	def gate(g: str) -> Operand:
		y = b.matmul(x, w[g])
		return y if bias is None else b.add(y, bias[g])

	def recur(g: str, state: Operand | None) -> Operand | None:
		y = None if state is None else b.matmul(state, rw[g])
		if rbias is not None:
			y = rbias[g] if y is None else b.add(y, rbias[g])
		return y

	z = b.sigmoid(plus(gate("z"), recur("z", h)))
	r = b.sigmoid(plus(gate("r"), recur("r", h)))
	if reset_after:
		rn = recur("n", h)
		n = b.tanh(plus(gate("n"), None if rn is None else b.mul(r, rn)))
	else:
		n = b.tanh(plus(gate("n"), recur("n", None if h is None else b.mul(r, h))))

	# (1 - z) * n + z * h, written without a ones constant.
	if h is None:
		return b.sub(n, b.mul(z, n))
	return b.add(n, b.mul(z, b.sub(h, n)))


def _cell_weights(
	b: GraphBuilder,
	weight: Operand,
	recurrent_weight: Operand,
	bias: Operand | None,
	recurrent_bias: Operand | None,
	layout: str,
) -> tuple[Gates, Gates, Gates | None, Gates | None]:
	w = {g: b.transpose(t) for g, t in _gates(b, weight, layout).items()}
	rw = {g: b.transpose(t) for g, t in _gates(b, recurrent_weight, layout).items()}
	bg = None if bias is None else _gates(b, bias, layout)
	rbg = None if recurrent_bias is None else _gates(b, recurrent_bias, layout)
	return w, rw, bg, rbg


def _check_layout(layout: object) -> None:
	if layout not in LAYOUTS:
		raise InvalidOption(f"gru: layout must be one of {sorted(LAYOUTS)}, got {layout!r}")


def gru_cell(
	b: GraphBuilder,
	input: Operand,
	weight: Operand,
	recurrent_weight: Operand,
	hidden_state: Operand,
	hidden_size: int,
	*,
	bias: Operand | None,
	recurrent_bias: Operand | None,
	reset_after: bool,
	layout: str,
) -> Operand:
	hs = _positive(hidden_size, "hidden_size")
	_check_layout(layout)
	b._check_owned([t for t in (input, weight, recurrent_weight, hidden_state, bias, recurrent_bias) if t is not None])
	_expect(input, 2, {}, "gru_cell input")
	_expect(weight, 2, {0: 3 * hs, 1: input.shape[1]}, "gru_cell weight")
	_expect(recurrent_weight, 2, {0: 3 * hs, 1: hs}, "gru_cell recurrent_weight")
	_expect(hidden_state, 2, {0: input.shape[0], 1: hs}, "gru_cell hidden_state")
	_expect(bias, 1, {0: 3 * hs}, "gru_cell bias")
	_expect(recurrent_bias, 1, {0: 3 * hs}, "gru_cell recurrent_bias")

	w, rw, bg, rbg = _cell_weights(b, weight, recurrent_weight, bias, recurrent_bias, layout)
	return _step(b, input, w, rw, bg, rbg, hidden_state, reset_after)


def gru(
	b: GraphBuilder,
	input: Operand,
	weight: Operand,
	recurrent_weight: Operand,
	steps: int,
	hidden_size: int,
	*,
	bias: Operand | None,
	recurrent_bias: Operand | None,
	initial_hidden_state: Operand | None,
	reset_after: bool,
	return_sequence: bool,
	direction: str,
	layout: str,
) -> tuple[Operand, ...]:
	"""Unroll a GRU over ``steps`` time steps.

	Returns ``(hidden,)`` or ``(hidden, sequence)`` when ``return_sequence``:
	hidden is ``[num_directions, batch, hidden_size]`` and sequence is
	``[steps, num_directions, batch, hidden_size]``. The backward direction
	walks time in reverse but writes each sequence entry at its own step.
	"""

	steps = _positive(steps, "steps")
	hs = _positive(hidden_size, "hidden_size")
	_check_layout(layout)
	if direction not in DIRECTIONS:
		raise InvalidOption(f"gru: direction must be one of {sorted(DIRECTIONS)}, got {direction!r}")
	directions = DIRECTIONS[direction]
	nd = len(directions)

	b._check_owned(
		[t for t in (input, weight, recurrent_weight, bias, recurrent_bias, initial_hidden_state) if t is not None]
	)
	_expect(input, 3, {0: steps}, "gru input")
	_expect(weight, 3, {0: nd, 1: 3 * hs, 2: input.shape[2]}, "gru weight")
	_expect(recurrent_weight, 3, {0: nd, 1: 3 * hs, 2: hs}, "gru recurrent_weight")
	_expect(bias, 2, {0: nd, 1: 3 * hs}, "gru bias")
	_expect(recurrent_bias, 2, {0: nd, 1: 3 * hs}, "gru recurrent_bias")
	_expect(initial_hidden_state, 3, {0: nd, 1: input.shape[1], 2: hs}, "gru initial_hidden_state")

	xs = [b.squeeze(x, axes=[0]) for x in b.split(input, steps, axis=0)]
	weights = _per_direction(b, weight, nd)
	recurrent_weights = _per_direction(b, recurrent_weight, nd)
	biases = _per_direction(b, bias, nd)
	recurrent_biases = _per_direction(b, recurrent_bias, nd)
	initial = _per_direction(b, initial_hidden_state, nd)

	finals: list[Operand] = []
	sequence: list[list[Operand]] = [[] for _ in range(steps)]
	for d, name in enumerate(directions):
		w, rw, bg, rbg = _cell_weights(b, weights[d], recurrent_weights[d], biases[d], recurrent_biases[d], layout)
		h = initial[d]
		order = range(steps) if name == "forward" else reversed(range(steps))
		for t in order:
			h = _step(b, xs[t], w, rw, bg, rbg, h, reset_after)
			if return_sequence:
				sequence[t].append(b.unsqueeze(h, axes=[0, 1]))
		finals.append(b.unsqueeze(h, axes=[0]))

	hidden = finals[0] if nd == 1 else b.concat(finals, axis=0)
	if not return_sequence:
		return (hidden,)
	rows = [row[0] if nd == 1 else b.concat(row, axis=1) for row in sequence]
	return (hidden, rows[0] if steps == 1 else b.concat(rows, axis=0))
