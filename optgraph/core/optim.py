"""
Graph optimizers

An optimizer does not touch any values. It builds the update ops for one
training step; running the returned list with a Session advances training
by one step.

Every list returned by ``apply_gradient`` has the same layout:

1. iteration counter increment
2. learning rate decay refresh (only when ``decay > 0``)
3. one auxiliary state update per parameter
4. one value update per parameter

The decay refresh reads the counter after the increment of the same step, so
after ``k`` executed steps the learning rate is ``lr0 / (1 + decay * k)``.
All gradients are evaluated by the state updates, before any parameter is
written.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from optgraph.core.config import config, MISSING_GRADIENT_POLICIES
from optgraph.core.exceptions import (
    GradientError,
    InvalidArgumentError,
    warn_optimizer,
)
from optgraph.core.gradients import gradients
from optgraph.core.ir import DataType, IRGraph, IRNode, VariableNode

GradAndVar = Tuple[Optional[IRNode], VariableNode]


class Optimizer(ABC):
    """
    Base class for all the optimizers

    Args:
        graph: graph the update ops are created in
        name: name scope of every node the optimizer creates
        missing_gradient: what to do with a parameter whose gradient is None:
            "skip" leaves it untouched, "zero" applies the rule with a zero
            gradient, "raise" fails with GradientError. Defaults to
            ``config.missing_gradient``
        verbose: print a summary when ops are built
    """

    # Name of the per-parameter auxiliary state, set by each rule
    slot_name: Optional[str] = None

    def __init__(
        self,
        graph: IRGraph,
        name: str,
        missing_gradient: Optional[str] = None,
        verbose: Optional[bool] = None,
    ):
        if missing_gradient is None:
            missing_gradient = config.missing_gradient
        if missing_gradient not in MISSING_GRADIENT_POLICIES:
            raise InvalidArgumentError(
                "missing_gradient",
                missing_gradient,
                f"one of {MISSING_GRADIENT_POLICIES}",
                optimizer_type=self.__class__.__name__,
            )

        self._graph = graph
        self._name = name
        self.missing_gradient = missing_gradient
        self.verbose = config.verbose if verbose is None else verbose

        # Auxiliary state keyed by parameter id, in creation order
        self._slots: Dict[str, VariableNode] = {}

        self.iterations: Optional[VariableNode] = None
        self.learning_rate: Optional[VariableNode] = None
        self._step_ops: List[IRNode] = []

    @property
    def graph(self) -> IRGraph:
        return self._graph

    @property
    def name(self) -> str:
        return self._name

    def _create_step_ops(self, learning_rate: float, decay: float) -> None:
        """Create the counter, the learning rate variable and their update ops"""
        graph = self._graph
        with graph.name_scope(self._name):
            self.iterations = graph.variable(
                graph.constant(0, dtype=DataType.INT64), trainable=False, name="iterations"
            )
            self._step_ops.append(
                graph.assign_add(self.iterations, graph.constant(1, dtype=DataType.INT64))
            )
            initial_learning_rate = graph.constant(learning_rate, dtype=DataType.FLOAT32)
            self.learning_rate = graph.variable(
                initial_learning_rate, trainable=False, name="LearningRate"
            )
            if decay > 0:
                self._step_ops.append(self._create_decay_op(decay, initial_learning_rate))

    def _create_decay_op(self, decay: float, initial_learning_rate: IRNode) -> IRNode:
        # lr = lr0 * (1 / (1 + decay * iterations))
        graph = self._graph
        decay_node = graph.constant(decay, dtype=DataType.FLOAT32, name="Decay")
        one = graph.constant(1.0, dtype=DataType.FLOAT32)
        iterations = graph.cast(self.iterations, decay_node.dtype)
        return graph.assign(
            self.learning_rate,
            graph.mul(
                initial_learning_rate,
                graph.div(one, graph.add(one, graph.mul(decay_node, iterations))),
            ),
        )

    def compute_gradient(
        self,
        loss: IRNode,
        var_list: Optional[Sequence[VariableNode]] = None,
        colocate_gradients_with_ops: bool = False,
    ) -> List[GradAndVar]:
        """
        Compute the gradient of ``loss`` for each variable

        Args:
            loss: scalar node to minimize
            var_list: variables to compute gradients for. If None the gradient
                is computed for all the trainable variables in the graph
            colocate_gradients_with_ops: place each gradient node on the same
                device as its variable

        Returns:
            A list of (gradient, variable) pairs in ``var_list`` order. The
            variable is always present, the gradient can be None.
        """
        if var_list is None:
            var_list = self._graph.get_trainable_variables()
            if not var_list:
                warn_optimizer(
                    f"{self._name}: graph '{self._graph.name}' has no trainable variables, "
                    "no gradients computed"
                )
        var_list = list(var_list)
        if not var_list:
            return []

        graph = self._graph
        grads = gradients(graph, loss, var_list)
        if colocate_gradients_with_ops:
            # gradients() may return one node for several variables
            colocated = []
            for grad, var in zip(grads, var_list):
                if grad is not None:
                    with graph.name_scope("gradients"), graph.device(var.device):
                        grad = graph.identity(grad, name="colocated")
                    grad.attributes["colocate_with"] = var.name
                colocated.append(grad)
            grads = colocated
        return list(zip(grads, var_list))

    @abstractmethod
    def apply_gradient(self, grads_and_vars: Sequence[GradAndVar]) -> List[IRNode]:
        """Return the ops that perform one update step for ``grads_and_vars``"""
        pass

    def minimize(self, loss: IRNode, var_list: Optional[Sequence[VariableNode]] = None) -> List[IRNode]:
        """
        Add operations to minimize ``loss`` by updating ``var_list``

        This simply combines ``compute_gradient()`` and ``apply_gradient()``.
        Call them separately to process the gradients before applying them.
        """
        return self.apply_gradient(self.compute_gradient(loss, var_list))

    def _resolve_gradients(self, grads_and_vars: Sequence[GradAndVar]) -> List[Tuple[IRNode, VariableNode]]:
        """Apply the missing gradient policy"""
        resolved = []
        skipped = []
        for grad, var in grads_and_vars:
            if grad is not None:
                resolved.append((grad, var))
                continue
            if self.missing_gradient == "raise":
                raise GradientError(
                    f"{self._name}: no gradient for variable '{var.name}'",
                    nodes=[var],
                    operation="apply_gradient",
                )
            if self.missing_gradient == "zero":
                with self._graph.name_scope(self._name):
                    resolved.append((self._graph.zeros(var.shape, var.dtype), var))
            else:
                skipped.append(var.name)

        if skipped:
            warn_optimizer(f"{self._name}: skipped variables without gradient: {skipped}")
        return resolved

    def _get_or_create_slot(self, var: VariableNode) -> VariableNode:
        slot = self._slots.get(var.id)
        if slot is not None:
            return slot

        graph = self._graph
        with graph.name_scope(self._name), graph.device(var.device):
            shape = graph.get_tensor_shape(var)
            slot = graph.variable_v2(shape, var.dtype, name=f"{var.name}/{self.slot_name}")
            graph.register_initializer(graph.assign(slot, self._slot_initial_value(shape, var.dtype)))
        self._slots[var.id] = slot
        return slot

    @abstractmethod
    def _slot_initial_value(self, shape: Tuple[int, ...], dtype: DataType) -> IRNode:
        pass

    def get_slot(self, var: VariableNode) -> Optional[VariableNode]:
        """Auxiliary state of ``var``, or None if not created yet"""
        return self._slots.get(var.id)

    def get_slot_names(self) -> List[str]:
        return [self.slot_name]

    def variables(self) -> List[VariableNode]:
        """Every variable owned by this optimizer"""
        return [self.iterations, self.learning_rate] + list(self._slots.values())

    def _log_apply(self, num_vars: int, ops: List[IRNode]) -> None:
        if self.verbose:
            print(f"{self._name}: built {len(ops)} update op(s) for {num_vars} variable(s)")


class SGD(Optimizer):
    """
    Stochastic gradient descent optimizer
    Includes support for momentum, learning rate decay, and Nesterov momentum

    Update rule for each variable ``w`` with gradient ``g``:
        v = momentum * v - lr * g
        w = w + momentum * v - lr * g   (nesterov)
        w = w + v                       (otherwise)

    Args:
        graph: the graph object
        learning_rate: the learning rate for the SGD update
        momentum: accelerates SGD in the relevant direction and dampens oscillations
        decay: learning rate decay over each update
        nesterov: whether to apply Nesterov momentum
        name: all the nodes created by this optimizer are created under this scope
    """

    slot_name = "momentum"

    def __init__(
        self,
        graph: IRGraph,
        learning_rate: float,
        momentum: float = 0.0,
        decay: float = 0.0,
        nesterov: bool = False,
        name: str = "SGDOptimizer",
        missing_gradient: Optional[str] = None,
        verbose: Optional[bool] = None,
    ):
        super().__init__(graph, name, missing_gradient=missing_gradient, verbose=verbose)
        self.initial_learning_rate = learning_rate
        self.decay = decay
        self.nesterov = nesterov

        self._create_step_ops(learning_rate, decay)
        with graph.name_scope(self._name):
            self._momentum = graph.constant(momentum, dtype=DataType.FLOAT32, name="Momentum")

        if self.verbose:
            print(
                f"{self._name}: lr={learning_rate}, momentum={momentum}, "
                f"decay={decay}, nesterov={nesterov}"
            )

    @property
    def momentum(self) -> float:
        return float(self._momentum.attributes["value"])

    def _slot_initial_value(self, shape, dtype):
        return self._graph.zeros(shape, dtype)

    def apply_gradient(self, grads_and_vars: Sequence[GradAndVar]) -> List[IRNode]:
        graph = self._graph
        grads_and_vars = self._resolve_gradients(grads_and_vars)
        slot_ops, var_ops = [], []

        for grad, var in grads_and_vars:
            moment = self._get_or_create_slot(var)
            with graph.name_scope(self._name), graph.device(var.device):
                lr = graph.cast(self.learning_rate, var.dtype)
                m = graph.cast(self._momentum, var.dtype)
                # v = m * moment - lr * g
                velocity = graph.sub(graph.mul(m, moment), graph.mul(lr, grad))
                # moment = v
                slot_ops.append(graph.assign(moment, velocity))

                if self.nesterov:
                    # w = w + m * v - lr * g
                    delta = graph.sub(graph.mul(m, velocity), graph.mul(lr, grad))
                    var_ops.append(graph.assign_add(var, delta))
                else:
                    # w = w + v
                    var_ops.append(graph.assign_add(var, velocity))

        ops = list(self._step_ops) + slot_ops + var_ops
        self._log_apply(len(grads_and_vars), ops)
        return ops


class Adagrad(Optimizer):
    """
    Adaptive gradient optimizer

    Keeps a per-variable accumulator of squared gradients and divides the
    step by its square root, so frequently updated coordinates get smaller
    steps over time.

        a = a + g^2
        w = w - lr * g / sqrt(a + 1e-7)

    Args:
        graph: the graph object
        learning_rate: the learning rate
        decay: learning rate decay over each update
        initial_accumulator_value: starting value for the accumulators, must
            be non-negative
        name: all the nodes created by this optimizer are created under this scope
    """

    slot_name = "accumulator"
    epsilon = 1e-7

    def __init__(
        self,
        graph: IRGraph,
        learning_rate: float,
        decay: float = 0.0,
        initial_accumulator_value: float = 0.1,
        name: str = "AdagradOptimizer",
        missing_gradient: Optional[str] = None,
        verbose: Optional[bool] = None,
    ):
        # NaN fails this comparison too
        if not initial_accumulator_value >= 0:
            raise InvalidArgumentError(
                "initial_accumulator_value",
                initial_accumulator_value,
                "non-negative",
                optimizer_type="Adagrad",
            )
        super().__init__(graph, name, missing_gradient=missing_gradient, verbose=verbose)
        self.initial_learning_rate = learning_rate
        self.decay = decay
        self.initial_accumulator_value = initial_accumulator_value

        self._create_step_ops(learning_rate, decay)
        with graph.name_scope(self._name):
            self._epsilon = graph.constant(self.epsilon, dtype=DataType.FLOAT32, name="Epsilon")

        if self.verbose:
            print(
                f"{self._name}: lr={learning_rate}, decay={decay}, "
                f"initial_accumulator_value={initial_accumulator_value}"
            )

    def _slot_initial_value(self, shape, dtype):
        return self._graph.fill(shape, self.initial_accumulator_value, dtype)

    def apply_gradient(self, grads_and_vars: Sequence[GradAndVar]) -> List[IRNode]:
        graph = self._graph
        grads_and_vars = self._resolve_gradients(grads_and_vars)
        slot_ops, var_ops = [], []

        for grad, var in grads_and_vars:
            accumulator = self._get_or_create_slot(var)
            with graph.name_scope(self._name), graph.device(var.device):
                lr = graph.cast(self.learning_rate, var.dtype)
                eps = graph.cast(self._epsilon, var.dtype)
                # accum = accum + g ** 2
                accum = graph.add(accumulator, graph.square(grad))
                slot_ops.append(graph.assign(accumulator, accum))
                # w = w - lr * g / sqrt(accum + eps)
                step = graph.div(graph.mul(lr, grad), graph.sqrt(graph.add(accum, eps)))
                var_ops.append(graph.assign_sub(var, step))

        ops = list(self._step_ops) + slot_ops + var_ops
        self._log_apply(len(grads_and_vars), ops)
        return ops
