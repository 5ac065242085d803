from optgraph.core.ir import IRGraph, IRNode, DataType, VariableNode, ConstantNode, PlaceholderNode
from optgraph.core.gradients import gradients
from optgraph.core.session import Session
from optgraph.core.optim import Optimizer, SGD, Adagrad
from optgraph.core.config import config, configure, config_context
from optgraph.core.exceptions import (
    OptGraphError,
    OptimizerError,
    InvalidArgumentError,
    GradientError,
    OptimizerWarning,
)

# Import registries to ensure operations are registered
import optgraph.core.utils.ops_registry
