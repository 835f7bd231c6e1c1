"""End-to-end build + compute behaviour, including every binding error."""

import asyncio

import numpy as np
import pytest

from mlgraph import (
    BackendConfig,
    Context,
    Dynamic,
    GraphDisposed,
    InvalidOption,
    InvalidResource,
    MissingInputs,
    MissingOutputs,
    OutputMismatch,
    ShapeMismatch,
    ShapeUnresolved,
    TensorBinding,
    UnknownName,
    UnknownOperand,
    create_context,
)
from mlgraph.runtime import NumpyBackend

DESC = {"dtype": "float32", "dimensions": [2, 2]}


class RecordingBackend(NumpyBackend):
    """NumPy backend that remembers which kinds it ran."""

    def __init__(self, config=None, fail_on=None):
        super().__init__(config)
        self.kinds = []
        self.fail_on = fail_on

    def execute(self, kind, inputs, options):
        self.kinds.append(kind)
        if kind == self.fail_on:
            raise RuntimeError(f"kernel {kind} exploded")
        return super().execute(kind, inputs, options)


@pytest.fixture
def ctx():
    context = create_context()
    yield context
    context.close()


def ones(*shape):
    return np.ones(shape, dtype=np.float32)


def matmul_graph(ctx):
    """c = a @ b, d = ones(2x2) constant, e = c + d."""
    builder = ctx.graph_builder("matmul")
    a = builder.input("a", DESC)
    b = builder.input("b", DESC)
    c = builder.matmul(a, b)
    d = builder.constant(DESC, np.ones(4, dtype=np.float32))
    e = builder.add(c, d)
    return builder, builder.build({"c": c, "e": e})


def compute(graph, inputs=None, outputs=None):
    return asyncio.run(graph.compute(inputs, outputs))


class TestCompute:
    def test_single_output(self, ctx):
        _, graph = matmul_graph(ctx)
        out = {"c": np.empty(4, dtype=np.float32)}
        result = compute(graph, {"a": ones(4), "b": ones(4)}, out)
        np.testing.assert_array_equal(result["c"], [2, 2, 2, 2])
        assert result["c"] is out["c"]
        assert list(result) == ["c"]

    def test_multiple_outputs(self, ctx):
        _, graph = matmul_graph(ctx)
        out = {"c": np.empty(4, dtype=np.float32), "e": np.empty(4, dtype=np.float32)}
        result = compute(graph, {"a": ones(4), "b": ones(4)}, out)
        np.testing.assert_array_equal(result["c"], [2, 2, 2, 2])
        np.testing.assert_array_equal(result["e"], [3, 3, 3, 3])

    def test_subset_runs_only_ancestors(self):
        backend = RecordingBackend()
        ctx = Context(backend=backend)
        _, graph = matmul_graph(ctx)
        compute(graph, {"a": ones(4), "b": ones(4)}, {"c": np.empty(4, dtype=np.float32)})
        assert backend.kinds == ["matmul"]
        compute(graph, {"a": ones(4), "b": ones(4)}, {"e": np.empty(4, dtype=np.float32)})
        assert backend.kinds == ["matmul", "matmul", "add"]
        ctx.close()

    def test_output_buffer_may_be_shaped(self, ctx):
        _, graph = matmul_graph(ctx)
        a = np.array([[1, 2], [3, 4]], dtype=np.float32)
        out = np.empty((2, 2), dtype=np.float32)
        compute(graph, {"a": a, "b": np.eye(2, dtype=np.float32)}, {"c": out})
        np.testing.assert_array_equal(out, a)

    def test_dynamic_dimensions(self, ctx):
        builder = ctx.graph_builder("dynamic")
        x = builder.input("x", {"dtype": "float32", "dimensions": [Dynamic, 2]})
        y = builder.input("y", {"dtype": "float32", "dimensions": [2, Dynamic]})
        graph = builder.build({"z": builder.matmul(x, y)})
        out = np.empty(12, dtype=np.float32)
        compute(
            graph,
            {
                "x": {"resource": ones(6), "dimensions": [3, 2]},
                "y": TensorBinding(ones(8), dimensions=[2, 4]),
            },
            {"z": out},
        )
        np.testing.assert_array_equal(out, np.full(12, 2, dtype=np.float32))

    def test_dynamic_dimensions_can_change_between_calls(self, ctx):
        builder = ctx.graph_builder("dynamic")
        x = builder.input("x", {"dtype": "float32", "dimensions": [Dynamic, 3]})
        graph = builder.build({"y": builder.relu(builder.neg(x))})
        for n in (1, 4):
            data = -np.arange(n * 3, dtype=np.float32)
            out = np.empty(n * 3, dtype=np.float32)
            compute(graph, {"x": {"resource": data, "dimensions": [n, 3]}}, {"y": out})
            np.testing.assert_array_equal(out, -data)

    def test_transpose_permutation(self, ctx):
        builder = ctx.graph_builder("transpose")
        x = builder.input("x", {"dtype": "float32", "dimensions": [1, 2, 2, 1]})
        graph = builder.build({"y": builder.transpose(x, permutation=[0, 2, 1, 3])})
        out = np.empty(4, dtype=np.float32)
        compute(graph, {"x": np.array([1, 2, 3, 4], dtype=np.float32)}, {"y": out})
        np.testing.assert_array_equal(out, [1, 3, 2, 4])

    def test_input_and_constant_as_outputs(self, ctx):
        builder = ctx.graph_builder("passthrough")
        a = builder.input("a", DESC)
        k = builder.constant(np.arange(4, dtype=np.float32).reshape(2, 2))
        graph = builder.build({"a": a, "k": k})
        out = {"a": np.empty(4, dtype=np.float32), "k": np.empty(4, dtype=np.float32)}
        compute(graph, {"a": np.full(4, 5, dtype=np.float32)}, out)
        np.testing.assert_array_equal(out["a"], [5, 5, 5, 5])
        np.testing.assert_array_equal(out["k"], [0, 1, 2, 3])

    def test_graph_without_inputs(self, ctx):
        builder = ctx.graph_builder("constants")
        k = builder.constant(np.full((2, 2), 3, dtype=np.float32))
        graph = builder.build({"y": builder.mul(k, k)})
        out = np.empty(4, dtype=np.float32)
        compute(graph, None, {"y": out})
        np.testing.assert_array_equal(out, [9, 9, 9, 9])

    def test_split_outputs(self, ctx):
        builder = ctx.graph_builder("split")
        x = builder.input("x", {"dtype": "float32", "dimensions": [6]})
        first, _, last = builder.split(x, [1, 2, 3])
        graph = builder.build({"first": first, "last": last})
        out = {"first": np.empty(1, dtype=np.float32), "last": np.empty(3, dtype=np.float32)}
        compute(graph, {"x": np.arange(6, dtype=np.float32)}, out)
        np.testing.assert_array_equal(out["first"], [0])
        np.testing.assert_array_equal(out["last"], [3, 4, 5])

    def test_concurrent_calls(self):
        ctx = create_context(BackendConfig(max_workers=4))
        _, graph = matmul_graph(ctx)

        async def run_all():
            calls = []
            for i in range(8):
                a = np.full(4, i, dtype=np.float32)
                calls.append(graph.compute({"a": a, "b": ones(4)}, {"e": np.empty(4, dtype=np.float32)}))
            return await asyncio.gather(*calls)

        results = asyncio.run(run_all())
        for i, r in enumerate(results):
            np.testing.assert_array_equal(r["e"], np.full(4, 2 * i + 1, dtype=np.float32))
        graph.dispose()
        assert ctx.memory().num_tensors == 0
        ctx.close()

    def test_backend_errors_propagate_unchanged(self):
        backend = RecordingBackend(fail_on="add")
        ctx = Context(backend=backend)
        _, graph = matmul_graph(ctx)
        with pytest.raises(RuntimeError, match="kernel add exploded"):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"e": np.empty(4, dtype=np.float32)})
        # Only the retained constant survives a failed call.
        assert ctx.memory().num_tensors == 1
        graph.dispose()
        assert ctx.memory().num_tensors == 0
        ctx.close()


class TestBuild:
    def test_build_requires_outputs(self, ctx):
        builder = ctx.graph_builder("empty")
        builder.input("a", DESC)
        with pytest.raises(InvalidOption):
            builder.build({})

    def test_build_rejects_foreign_operand(self, ctx):
        b1 = ctx.graph_builder("one")
        b2 = ctx.graph_builder("two")
        a = b1.input("a", DESC)
        with pytest.raises(UnknownOperand):
            b2.build({"a": a})

    def test_unreachable_inputs_are_dropped(self, ctx):
        builder = ctx.graph_builder("reach")
        a = builder.input("a", DESC)
        builder.input("unused", DESC)
        graph = builder.build({"y": builder.relu(a)})
        assert list(graph.inputs) == ["a"]
        assert [n.kind for n in graph.nodes] == ["relu"]

    def test_nodes_are_topologically_ordered(self, ctx):
        builder = ctx.graph_builder("topo")
        a = builder.input("a", DESC)
        x = builder.relu(a)
        y = builder.exp(a)
        z = builder.add(y, x)
        graph = builder.build({"z": z})
        seen = set()
        for node in graph.nodes:
            for t in node.inputs:
                assert t.producer is None or t.producer.id in seen
            seen.add(node.id)
        assert [n.kind for n in graph.nodes] == ["relu", "exp", "add"]

    def test_summary(self, ctx):
        _, graph = matmul_graph(ctx)
        assert len(graph.constants) == 1
        text = graph.summary()
        assert text.startswith("CompiledGraph(inputs=[a:[2, 2], b:[2, 2]]")
        assert "matmul" in text


class TestBindingErrors:
    @pytest.fixture
    def graph(self, ctx):
        _, graph = matmul_graph(ctx)
        return graph

    @staticmethod
    def out(n=4):
        return {"c": np.empty(n, dtype=np.float32)}

    def test_no_inputs(self, graph):
        with pytest.raises(MissingInputs):
            compute(graph)
        with pytest.raises(MissingInputs):
            compute(graph, {}, self.out())

    def test_unknown_input_name(self, graph):
        with pytest.raises(UnknownName):
            compute(graph, {"x": ones(4)}, self.out())

    def test_missing_input(self, graph):
        with pytest.raises(MissingInputs):
            compute(graph, {"a": ones(4)}, self.out())

    def test_invalid_input_dimensions(self, graph):
        with pytest.raises(ShapeMismatch):
            compute(graph, {"a": {"resource": ones(4), "dimensions": [2]}, "b": ones(4)}, self.out())
        with pytest.raises(ShapeMismatch):
            compute(graph, {"a": {"resource": ones(4), "dimensions": [4, 1]}, "b": ones(4)}, self.out())

    def test_input_buffer_too_small(self, graph):
        with pytest.raises(ShapeMismatch):
            compute(graph, {"a": ones(3), "b": ones(4)}, self.out())

    def test_binding_without_resource(self, graph):
        with pytest.raises(InvalidResource):
            compute(graph, {"a": {}, "b": {}}, self.out())

    def test_non_buffer_inputs(self, graph):
        with pytest.raises(InvalidResource):
            compute(graph, {"a": 1, "b": 2})

    def test_wrong_input_dtype(self, graph):
        with pytest.raises(InvalidResource):
            compute(graph, {"a": np.ones(4, dtype=np.int32), "b": ones(4)}, self.out())

    def test_no_outputs(self, graph):
        with pytest.raises(MissingOutputs):
            compute(graph, {"a": ones(4), "b": ones(4)})
        with pytest.raises(MissingOutputs):
            compute(graph, {"a": ones(4), "b": ones(4)}, {})

    def test_unknown_output_name(self, graph):
        with pytest.raises(UnknownName):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"d": np.empty(4, dtype=np.float32)})

    def test_invalid_output_buffer(self, graph):
        with pytest.raises(OutputMismatch):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"c": []})

    def test_output_buffer_wrong_length(self, graph):
        with pytest.raises(OutputMismatch):
            compute(graph, {"a": ones(4), "b": ones(4)}, self.out(1))

    def test_read_only_output_buffer(self, graph):
        buf = np.empty(4, dtype=np.float32)
        buf.setflags(write=False)
        with pytest.raises(OutputMismatch):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"c": buf})

    def test_dynamic_input_needs_dimensions(self, ctx):
        builder = ctx.graph_builder("dynamic")
        x = builder.input("x", {"dtype": "float32", "dimensions": [Dynamic, 2]})
        graph = builder.build({"y": builder.relu(x)})
        with pytest.raises(ShapeUnresolved):
            compute(graph, {"x": ones(4)}, {"y": np.empty(4, dtype=np.float32)})

    def test_incompatible_resolved_dimensions(self, ctx):
        builder = ctx.graph_builder("dynamic")
        x = builder.input("x", {"dtype": "float32", "dimensions": [Dynamic, 2]})
        y = builder.input("y", {"dtype": "float32", "dimensions": [Dynamic, 2]})
        graph = builder.build({"z": builder.add(x, y)})
        with pytest.raises(ShapeMismatch):
            compute(
                graph,
                {
                    "x": {"resource": ones(4), "dimensions": [2, 2]},
                    "y": {"resource": ones(6), "dimensions": [3, 2]},
                },
                {"z": np.empty(4, dtype=np.float32)},
            )

    def test_errors_do_not_dispatch_work(self):
        backend = RecordingBackend()
        ctx = Context(backend=backend)
        _, graph = matmul_graph(ctx)
        with pytest.raises(OutputMismatch):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"c": np.empty(1, dtype=np.float32)})
        assert backend.kinds == []
        assert ctx.memory().num_tensors == 0
        ctx.close()


class TestImmutability:
    def test_graph_is_isolated_from_builder(self, ctx):
        builder = ctx.graph_builder("immutable")
        a = builder.input("a", DESC)
        buffer_b = np.ones(4, dtype=np.float32)
        b = builder.constant(DESC, buffer_b)
        graph = builder.build({"c": builder.matmul(a, b)})
        buffer_a = np.ones(4, dtype=np.float32)
        out = {"c": np.empty(4, dtype=np.float32)}

        compute(graph, {"a": buffer_a}, out)
        np.testing.assert_array_equal(out["c"], [2, 2, 2, 2])

        # Mutate the constant's source buffer.
        buffer_b[:] = 2
        compute(graph, {"a": buffer_a}, out)
        np.testing.assert_array_equal(out["c"], [2, 2, 2, 2])

        # Rebind the Python name to a new constant, then to a new input.
        b = builder.constant(DESC, buffer_b)
        compute(graph, {"a": buffer_a}, out)
        np.testing.assert_array_equal(out["c"], [2, 2, 2, 2])
        b = builder.input("b", DESC)
        compute(graph, {"a": buffer_a}, out)
        np.testing.assert_array_equal(out["c"], [2, 2, 2, 2])

        graph2 = builder.build({"c": builder.matmul(a, b)})
        compute(graph2, {"a": buffer_a, "b": buffer_b}, out)
        np.testing.assert_array_equal(out["c"], [4, 4, 4, 4])

    def test_results_do_not_alias(self, ctx):
        _, graph = matmul_graph(ctx)
        first = np.empty(4, dtype=np.float32)
        second = np.empty(4, dtype=np.float32)
        compute(graph, {"a": ones(4), "b": ones(4)}, {"c": first})
        compute(graph, {"a": np.full(4, 3, dtype=np.float32), "b": ones(4)}, {"c": second})
        np.testing.assert_array_equal(first, [2, 2, 2, 2])
        np.testing.assert_array_equal(second, [6, 6, 6, 6])

    def test_input_buffers_are_not_written(self, ctx):
        _, graph = matmul_graph(ctx)
        a = ones(4)
        compute(graph, {"a": a, "b": ones(4)}, {"e": np.empty(4, dtype=np.float32)})
        assert a.flags.writeable
        np.testing.assert_array_equal(a, ones(4))

    def test_compute_after_dispose(self, ctx):
        _, graph = matmul_graph(ctx)
        graph.dispose()
        graph.dispose()
        with pytest.raises(GraphDisposed):
            compute(graph, {"a": ones(4), "b": ones(4)}, {"c": np.empty(4, dtype=np.float32)})
