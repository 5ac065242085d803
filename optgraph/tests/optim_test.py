import pytest
import numpy as np

from optgraph.core.ir import DataType
from optgraph.core.optim import SGD, Adagrad
from optgraph.core.exceptions import GradientError, InvalidArgumentError, OptimizerWarning


OPTIMIZERS = [
    pytest.param(SGD, {"learning_rate": 0.1}, id="SGD"),
    pytest.param(SGD, {"learning_rate": 0.1, "momentum": 0.9, "nesterov": True}, id="SGD_nesterov"),
    pytest.param(Adagrad, {"learning_rate": 0.1}, id="Adagrad"),
]


def _assigns_to(ops, variable):
    return [op for op in ops if op.inputs and op.inputs[0] is variable]


@pytest.mark.optimizer
class TestOptimizerContract:
    """Behaviour shared by every update rule"""

    @pytest.mark.parametrize("count", [0, 1, 2, 5])
    def test_compute_gradient_one_pair_per_variable(self, graph, count):
        variables = [graph.variable(float(i + 1), name=f"w{i}") for i in range(count)]
        loss = graph.constant(0.0)
        for v in variables:
            loss = loss + v.square()

        opt = SGD(graph, learning_rate=0.1)
        pairs = opt.compute_gradient(loss, variables)

        assert len(pairs) == count
        assert [var for _, var in pairs] == variables
        assert all(grad is not None for grad, _ in pairs)

    def test_compute_gradient_defaults_to_trainable_variables(self, graph):
        w = graph.variable(1.0, name="w")
        b = graph.variable(2.0, name="b")
        graph.variable(3.0, trainable=False, name="frozen")

        opt = SGD(graph, learning_rate=0.1)
        pairs = opt.compute_gradient(w * b)

        assert [var for _, var in pairs] == [w, b]

    def test_compute_gradient_without_trainable_variables_warns(self, graph):
        loss = graph.constant(1.0)
        opt = SGD(graph, learning_rate=0.1)

        with pytest.warns(OptimizerWarning, match="no trainable variables"):
            pairs = opt.compute_gradient(loss)

        assert pairs == []

    def test_colocation_hint(self, graph):
        with graph.device("gpu:1"):
            w = graph.variable(np.ones(3, dtype=np.float32), name="w")
        loss = (w * 3.0).sum()
        opt = SGD(graph, learning_rate=0.1)

        (grad, _), = opt.compute_gradient(loss, [w], colocate_gradients_with_ops=True)
        assert grad.device == "gpu:1"
        assert grad.attributes["colocate_with"] == w.name

        (grad, _), = opt.compute_gradient(loss, [w])
        assert "colocate_with" not in grad.attributes

    def test_colocation_hint_per_variable_with_shared_gradient(self, graph, session):
        with graph.device("gpu:0"):
            a = graph.variable(1.0, name="a")
        with graph.device("gpu:1"):
            b = graph.variable(2.0, name="b")
        opt = SGD(graph, learning_rate=0.1)

        (ga, _), (gb, _) = opt.compute_gradient(a + b, [a, b], colocate_gradients_with_ops=True)

        assert ga is not gb
        assert (ga.device, ga.attributes["colocate_with"]) == ("gpu:0", "a")
        assert (gb.device, gb.attributes["colocate_with"]) == ("gpu:1", "b")
        session.initialize()
        np.testing.assert_allclose(session.run([ga, gb]), [1.0, 1.0])

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_minimize_increments_counter_once(self, graph, session, opt_cls, kwargs):
        w = graph.variable(np.array([1.0, -2.0], dtype=np.float32), name="w")
        opt = opt_cls(graph, **kwargs)
        ops = opt.minimize(w.square().sum())

        session.initialize()
        assert session.value(opt.iterations) == 0
        for step in range(1, 4):
            session.run(ops)
            assert session.value(opt.iterations) == step

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_zero_decay_leaves_learning_rate_alone(self, graph, session, run_steps, opt_cls, kwargs):
        w = graph.variable(1.0, name="w")
        opt = opt_cls(graph, **kwargs)
        ops = opt.minimize(w.square())

        assert _assigns_to(ops, opt.learning_rate) == []
        run_steps(session, ops, 5)
        np.testing.assert_allclose(session.value(opt.learning_rate), 0.1, rtol=1e-7)

    @pytest.mark.numerical
    @pytest.mark.parametrize("opt_cls", [SGD, Adagrad])
    def test_decay_follows_inverse_time(self, graph, session, opt_cls):
        lr0, decay = 0.1, 0.5
        w = graph.variable(1.0, name="w")
        opt = opt_cls(graph, learning_rate=lr0, decay=decay)
        ops = opt.minimize(w.square())

        session.initialize()
        for k in range(1, 6):
            session.run(ops)
            np.testing.assert_allclose(
                session.value(opt.learning_rate), lr0 / (1 + decay * k), rtol=1e-6
            )

    @pytest.mark.parametrize("opt_cls", [SGD, Adagrad])
    def test_op_order(self, graph, opt_cls):
        w = graph.variable(1.0, name="w")
        b = graph.variable(2.0, name="b")
        opt = opt_cls(graph, learning_rate=0.1, decay=0.01)

        ops = opt.minimize(w * b, [w, b])

        assert len(ops) == 6
        assert ops[0].op_type == "AssignAdd" and ops[0].inputs[0] is opt.iterations
        assert ops[1].op_type == "Assign" and ops[1].inputs[0] is opt.learning_rate
        assert [op.inputs[0] for op in ops[2:4]] == [opt.get_slot(w), opt.get_slot(b)]
        assert [op.inputs[0] for op in ops[4:6]] == [w, b]

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_gradients_read_parameters_before_any_update(self, graph, session, run_steps, opt_cls, kwargs):
        # loss = a * b: each gradient depends on the other parameter
        a = graph.variable(2.0, name="a")
        b = graph.variable(3.0, name="b")
        opt_ops = opt_cls(graph, **kwargs).minimize(a * b)

        reference = ReferenceStep(opt_cls, kwargs)
        run_steps(session, opt_ops, 1)

        np.testing.assert_allclose(session.value(a), reference.a, rtol=1e-6)
        np.testing.assert_allclose(session.value(b), reference.b, rtol=1e-6)

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_slot_matches_variable_shape_and_dtype(self, graph, opt_cls, kwargs):
        variables = [
            graph.variable(np.zeros((), dtype=np.float32), name="scalar"),
            graph.variable(np.zeros((3,), dtype=np.float32), name="vector"),
            graph.variable(np.zeros((2, 4), dtype=np.float64), name="matrix"),
        ]
        loss = graph.constant(0.0)
        for v in variables:
            term = v.square().sum()
            if term.dtype != DataType.FLOAT32:
                term = graph.cast(term, DataType.FLOAT32)
            loss = loss + term

        opt = opt_cls(graph, **kwargs)
        opt.minimize(loss, variables)

        for v in variables:
            slot = opt.get_slot(v)
            assert slot.shape == v.shape
            assert slot.dtype == v.dtype
            assert not slot.trainable

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_slots_created_once(self, graph, opt_cls, kwargs):
        w = graph.variable(np.ones(2, dtype=np.float32), name="w")
        b = graph.variable(0.5, name="b")
        opt = opt_cls(graph, **kwargs)

        opt.minimize((w * b).sum(), [w, b])
        slots = {v.name: opt.get_slot(v) for v in (w, b)}
        num_variables = len(graph.variables)

        # Reordered parameter list on the second call
        opt.minimize((w * b).sum(), [b, w])

        assert len(graph.variables) == num_variables
        assert opt.get_slot(w) is slots["w"]
        assert opt.get_slot(b) is slots["b"]
        assert opt.variables() == [opt.iterations, opt.learning_rate, slots["w"], slots["b"]]

    @pytest.mark.parametrize("opt_cls,kwargs", OPTIMIZERS)
    def test_independent_optimizers_do_not_share_state(self, graph, session, opt_cls, kwargs):
        w = graph.variable(np.array([1.0, 2.0], dtype=np.float32), name="w")
        loss = w.square().sum()
        first = opt_cls(graph, name="first", **kwargs)
        second = opt_cls(graph, name="second", **kwargs)
        first_ops = first.minimize(loss)
        second.minimize(loss)

        assert first.get_slot(w) is not second.get_slot(w)

        session.initialize()
        untouched = session.value(second.get_slot(w))
        for _ in range(3):
            session.run(first_ops)

        np.testing.assert_array_equal(session.value(second.get_slot(w)), untouched)
        assert session.value(second.iterations) == 0
        assert session.value(first.iterations) == 3

    @pytest.mark.parametrize("opt_cls", [SGD, Adagrad])
    def test_nodes_live_under_optimizer_scope(self, graph, opt_cls):
        w = graph.variable(1.0, name="w")
        opt = opt_cls(graph, learning_rate=0.1, name="train")
        opt.minimize(w.square())

        for v in opt.variables():
            assert v.name.startswith("train/")
        assert opt.get_slot(w).name == f"train/w/{opt.slot_name}"
        assert opt.get_slot_names() == [opt.slot_name]


class ReferenceStep:
    """One step of an update rule on loss = a * b, computed with numpy"""

    def __init__(self, opt_cls, kwargs, a=2.0, b=3.0):
        lr = kwargs["learning_rate"]
        ga, gb = b, a
        if opt_cls is SGD:
            m = kwargs.get("momentum", 0.0)
            va, vb = -lr * ga, -lr * gb
            if kwargs.get("nesterov"):
                self.a = a + m * va - lr * ga
                self.b = b + m * vb - lr * gb
            else:
                self.a = a + va
                self.b = b + vb
        else:
            acc_a, acc_b = 0.1 + ga ** 2, 0.1 + gb ** 2
            self.a = a - lr * ga / np.sqrt(acc_a + 1e-7)
            self.b = b - lr * gb / np.sqrt(acc_b + 1e-7)


@pytest.mark.optimizer
class TestMissingGradient:

    def _build(self, graph):
        used = graph.variable(np.array([1.0, 2.0], dtype=np.float32), name="used")
        unused = graph.variable(np.array([5.0], dtype=np.float32), name="unused")
        return used, unused, used.square().sum()

    def test_skip(self, graph, session, run_steps):
        used, unused, loss = self._build(graph)
        opt = SGD(graph, learning_rate=0.1, missing_gradient="skip")

        with pytest.warns(OptimizerWarning, match="unused"):
            ops = opt.minimize(loss)

        assert opt.get_slot(unused) is None
        assert _assigns_to(ops, unused) == []
        run_steps(session, ops, 2)
        np.testing.assert_array_equal(session.value(unused), [5.0])

    def test_zero(self, graph, session, run_steps):
        used, unused, loss = self._build(graph)
        opt = Adagrad(graph, learning_rate=0.1, missing_gradient="zero")
        ops = opt.minimize(loss)

        assert opt.get_slot(unused) is not None
        run_steps(session, ops, 2)
        np.testing.assert_array_equal(session.value(unused), [5.0])
        np.testing.assert_allclose(session.value(opt.get_slot(unused)), [0.1], rtol=1e-7)

    def test_raise(self, graph):
        used, unused, loss = self._build(graph)
        opt = SGD(graph, learning_rate=0.1, missing_gradient="raise")

        with pytest.raises(GradientError, match="unused"):
            opt.minimize(loss)

    def test_unknown_policy(self, graph):
        with pytest.raises(InvalidArgumentError, match="missing_gradient"):
            SGD(graph, learning_rate=0.1, missing_gradient="ignore")

    def test_policy_from_config(self, graph):
        from optgraph.core.config import configure

        used, unused, loss = self._build(graph)
        configure(missing_gradient="raise")
        opt = SGD(graph, learning_rate=0.1)

        assert opt.missing_gradient == "raise"
        with pytest.raises(GradientError):
            opt.minimize(loss)


@pytest.mark.optimizer
@pytest.mark.numerical
class TestSGD:

    def test_zero_momentum_is_plain_gradient_descent(self, graph, session):
        init = np.array([5.0, -3.0, 0.5], dtype=np.float32)
        w = graph.variable(init, name="w")
        opt = SGD(graph, learning_rate=0.1)
        ops = opt.minimize(w.square().sum())

        session.initialize()
        expected = init.astype(np.float64)
        for _ in range(5):
            session.run(ops)
            expected = expected - 0.1 * (2 * expected)
            np.testing.assert_allclose(session.value(w), expected, rtol=1e-5)

    def test_momentum_buffer_accumulates(self, graph, session):
        # loss = w gives a constant gradient of 1
        w = graph.variable(1.0, name="w")
        opt = SGD(graph, learning_rate=0.1, momentum=0.9)
        ops = opt.minimize(w)

        session.initialize()
        velocities = []
        for _ in range(3):
            session.run(ops)
            velocities.append(float(session.value(opt.get_slot(w))))

        np.testing.assert_allclose(velocities, [-0.1, -0.19, -0.271], rtol=1e-5)
        np.testing.assert_allclose(session.value(w), 1.0 - 0.561, rtol=1e-5)

    def test_nesterov_trajectory_differs(self, graph, session):
        w_plain = graph.variable(1.0, name="w_plain")
        w_nesterov = graph.variable(1.0, name="w_nesterov")
        plain = SGD(graph, learning_rate=0.1, momentum=0.9, name="plain")
        nesterov = SGD(graph, learning_rate=0.1, momentum=0.9, nesterov=True, name="nesterov")
        ops = plain.minimize(w_plain, [w_plain]) + nesterov.minimize(w_nesterov, [w_nesterov])

        session.initialize()
        plain_path, nesterov_path = [], []
        for _ in range(3):
            session.run(ops)
            plain_path.append(float(session.value(w_plain)))
            nesterov_path.append(float(session.value(w_nesterov)))

        np.testing.assert_allclose(plain_path, [0.9, 0.71, 0.439], rtol=1e-5)
        np.testing.assert_allclose(nesterov_path, [0.81, 0.539, 0.1951], rtol=1e-5)

    def test_momentum_is_fixed_constant(self, graph):
        opt = SGD(graph, learning_rate=0.1, momentum=0.9)
        assert opt.momentum == pytest.approx(0.9)
        assert opt._momentum not in graph.variables

    def test_no_validation_of_hyperparameters(self, graph):
        opt = SGD(graph, learning_rate=-1.0, momentum=1.5)
        assert opt.initial_learning_rate == -1.0

    def test_learning_rate_cast_to_variable_dtype(self, graph, session, run_steps):
        w = graph.variable(np.array([1.0], dtype=np.float64), name="w")
        opt = SGD(graph, learning_rate=0.5)
        ops = opt.minimize(w.square().sum())

        run_steps(session, ops, 1)
        value = session.value(w)
        assert value.dtype == np.float64
        np.testing.assert_allclose(value, [0.0], atol=1e-12)

    def test_verbose_prints_summary(self, graph, capsys):
        w = graph.variable(1.0, name="w")
        opt = SGD(graph, learning_rate=0.1, verbose=True)
        opt.minimize(w.square())

        out = capsys.readouterr().out
        assert "SGDOptimizer: lr=0.1" in out
        assert "built 3 update op(s) for 1 variable(s)" in out


@pytest.mark.optimizer
@pytest.mark.numerical
class TestAdagrad:

    def test_negative_initial_accumulator_fails_before_building(self, graph):
        with pytest.raises(InvalidArgumentError) as excinfo:
            Adagrad(graph, learning_rate=0.1, initial_accumulator_value=-1)

        assert isinstance(excinfo.value, ValueError)
        assert excinfo.value.argument == "initial_accumulator_value"
        assert excinfo.value.value == -1
        assert "initial_accumulator_value = -1" in str(excinfo.value)
        assert len(graph.nodes) == 0

    def test_nan_initial_accumulator_rejected(self, graph):
        with pytest.raises(InvalidArgumentError, match="initial_accumulator_value"):
            Adagrad(graph, learning_rate=0.1, initial_accumulator_value=float("nan"))
        assert len(graph.nodes) == 0

    def test_zero_initial_accumulator_allowed(self, graph):
        opt = Adagrad(graph, learning_rate=0.1, initial_accumulator_value=0.0)
        assert opt.initial_accumulator_value == 0.0

    def test_accumulator_starts_at_initial_value(self, graph, session):
        w = graph.variable(np.zeros((2, 2), dtype=np.float32), name="w")
        opt = Adagrad(graph, learning_rate=0.1, initial_accumulator_value=0.25)
        opt.minimize(w.square().sum())

        session.initialize()
        np.testing.assert_allclose(session.value(opt.get_slot(w)), np.full((2, 2), 0.25))

    def test_update_divides_by_post_accumulation_sum(self, graph, session):
        # loss = w gives a constant gradient of 1
        w = graph.variable(1.0, name="w")
        opt = Adagrad(graph, learning_rate=0.1)
        ops = opt.minimize(w)

        session.initialize()
        expected_w, expected_acc = 1.0, 0.1
        for _ in range(3):
            session.run(ops)
            expected_acc += 1.0
            expected_w -= 0.1 / np.sqrt(expected_acc + 1e-7)
            np.testing.assert_allclose(session.value(opt.get_slot(w)), expected_acc, rtol=1e-5)
            np.testing.assert_allclose(session.value(w), expected_w, rtol=1e-5)

    def test_accumulator_monotone_and_step_size_shrinks(self, graph, session):
        w = graph.variable(np.array([3.0, -1.0, 0.5], dtype=np.float32), name="w")
        opt = Adagrad(graph, learning_rate=0.5)
        ops = opt.minimize(w.square().sum())

        session.initialize()
        accumulators = [session.value(opt.get_slot(w))]
        for _ in range(10):
            session.run(ops)
            accumulators.append(session.value(opt.get_slot(w)))

        accumulators = np.stack(accumulators)
        step_sizes = 0.5 / np.sqrt(accumulators + 1e-7)
        assert np.all(np.diff(accumulators, axis=0) >= 0)
        assert np.all(np.diff(step_sizes, axis=0) <= 0)

    def test_epsilon_is_fixed(self, graph):
        opt = Adagrad(graph, learning_rate=0.1)
        assert opt.epsilon == 1e-7
        with pytest.raises(TypeError):
            Adagrad(graph, learning_rate=0.1, epsilon=1e-3)
