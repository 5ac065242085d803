"""
Custom exceptions
"""
import traceback
import time
import warnings
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple


class ErrorSeverity(Enum):
    """Error severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for errors"""
    operation: Optional[str] = None
    node_names: List[str] = field(default_factory=list)
    node_shapes: List[Tuple] = field(default_factory=list)
    node_dtypes: List[str] = field(default_factory=list)
    optimizer_name: Optional[str] = None
    scope: Optional[str] = None
    custom_context: Dict[str, Any] = field(default_factory=dict)


class OptGraphError(Exception):
    """
    Base exception class for optgraph

    Provides error reporting with context, suggestions, and debugging info
    """

    def __init__(self, message: str,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 context: Optional[ErrorContext] = None,
                 suggestion: Optional[str] = None,
                 error_code: Optional[str] = None,
                 cause: Optional[Exception] = None):
        self.message = message
        self.severity = severity
        self.context = context or ErrorContext()
        self.suggestion = suggestion
        self.error_code = error_code
        self.cause = cause
        self.timestamp = time.time()

        # Capture stack trace
        self.stack_trace = traceback.format_stack()[:-1]

        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format comprehensive error message"""
        lines = [f"optgraph {self.severity.value.upper()} Error: {self.message}"]

        if self.error_code:
            lines.append(f"Error Code: {self.error_code}")

        if self.context and error_config.show_context:
            details = []
            if self.context.operation:
                details.append(f"  Operation: {self.context.operation}")
            if self.context.optimizer_name:
                details.append(f"  Optimizer: {self.context.optimizer_name}")
            if self.context.scope:
                details.append(f"  Scope: {self.context.scope}")
            if self.context.node_names:
                names = self.context.node_names[:error_config.max_node_info]
                details.append(f"  Nodes: {names}")
            if self.context.node_shapes:
                shapes = self.context.node_shapes[:error_config.max_node_info]
                details.append(f"  Node Shapes: {shapes}")
            if self.context.node_dtypes:
                dtypes = self.context.node_dtypes[:error_config.max_node_info]
                details.append(f"  Node Dtypes: {dtypes}")
            if details:
                lines.append("\nContext Information:")
                lines.extend(details)

        if self.suggestion and error_config.show_suggestions:
            lines.append(f"\nSuggestion: {self.suggestion}")

        if self.cause:
            lines.append(f"\nCaused by: {type(self.cause).__name__}: {self.cause}")

        return "\n".join(lines)

    def add_context(self, **kwargs):
        """Add additional context to the error"""
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.custom_context[key] = value
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "error_code": self.error_code,
            "timestamp": self.timestamp,
            "context": {
                "operation": self.context.operation,
                "node_names": self.context.node_names,
                "node_shapes": self.context.node_shapes,
                "node_dtypes": self.context.node_dtypes,
                "optimizer_name": self.context.optimizer_name,
                "scope": self.context.scope,
                "custom_context": self.context.custom_context,
            },
            "suggestion": self.suggestion,
            "cause": str(self.cause) if self.cause else None,
        }


# Graph-related exceptions
class GraphError(OptGraphError):
    """Base class for graph construction errors"""

    def __init__(self, message: str, nodes: List = None, operation: str = None, **kwargs):
        context = kwargs.get('context', ErrorContext())
        if operation:
            context.operation = operation
        if nodes:
            context.node_names = [getattr(n, 'name', None) for n in nodes]
            context.node_shapes = [getattr(n, 'shape', None) for n in nodes]
            context.node_dtypes = [str(getattr(n, 'dtype', None)) for n in nodes]

        kwargs['context'] = context
        kwargs.setdefault('error_code', 'GRAPH_ERROR')
        super().__init__(message, **kwargs)


class ShapeError(GraphError):
    """Shape mismatch between graph nodes"""

    def __init__(self, message: str, expected_shape=None, actual_shape=None,
                 operation: str = None, **kwargs):
        self.expected_shape = expected_shape
        self.actual_shape = actual_shape

        if expected_shape is not None and actual_shape is not None:
            shape_msg = f"Expected shape {expected_shape}, got {actual_shape}"
            message = f"{message}. {shape_msg}" if message else shape_msg
            kwargs.setdefault(
                'suggestion',
                "Auxiliary state and assignments must match the variable's shape exactly",
            )

        kwargs.setdefault('error_code', 'SHAPE_MISMATCH')
        super().__init__(message, operation=operation, **kwargs)


class DTypeError(GraphError):
    """Data type related errors"""

    def __init__(self, message: str, expected_dtype=None, actual_dtype=None,
                 operation: str = None, **kwargs):
        self.expected_dtype = expected_dtype
        self.actual_dtype = actual_dtype

        if expected_dtype is not None and actual_dtype is not None:
            dtype_msg = f"Expected dtype {expected_dtype}, got {actual_dtype}"
            message = f"{message}. {dtype_msg}" if message else dtype_msg
            kwargs.setdefault('suggestion', "Use graph.cast() to convert the expression first")

        kwargs.setdefault('error_code', 'DTYPE_MISMATCH')
        super().__init__(message, operation=operation, **kwargs)


class GradientError(GraphError):
    """Gradient computation errors"""

    def __init__(self, message: str, operation: str = None, **kwargs):
        kwargs.setdefault('error_code', 'GRADIENT_ERROR')
        kwargs.setdefault(
            'suggestion',
            "Check that the loss depends on every parameter passed to the optimizer",
        )
        super().__init__(message, operation=operation, **kwargs)


# Execution exceptions
class ExecutionError(OptGraphError):
    """Errors raised while a session evaluates nodes"""

    def __init__(self, message: str, node=None, **kwargs):
        self.node = node
        context = kwargs.get('context', ErrorContext())
        if node is not None:
            context.operation = getattr(node, 'op_type', None)
            context.node_names = [getattr(node, 'name', None)]
        kwargs['context'] = context
        kwargs.setdefault('error_code', 'EXECUTION_ERROR')
        super().__init__(message, **kwargs)


class UninitializedVariableError(ExecutionError):
    """A variable was read before its initializer ran"""

    def __init__(self, message: str, node=None, **kwargs):
        kwargs.setdefault('suggestion', "Call session.initialize() after building the update ops")
        kwargs.setdefault('error_code', 'UNINITIALIZED_VARIABLE')
        super().__init__(message, node=node, **kwargs)


# Optimizer exceptions
class OptimizerError(OptGraphError):
    """Optimizer-related errors"""

    def __init__(self, message: str, optimizer_type: str = None, **kwargs):
        self.optimizer_type = optimizer_type

        if optimizer_type:
            message = f"{optimizer_type} optimizer error: {message}"

        context = kwargs.get('context', ErrorContext())
        context.optimizer_name = context.optimizer_name or optimizer_type
        kwargs['context'] = context

        kwargs.setdefault('suggestion', "Check learning rate and other hyperparameters")
        kwargs.setdefault('error_code', 'OPTIMIZER_ERROR')
        super().__init__(message, **kwargs)


class InvalidArgumentError(OptimizerError, ValueError):
    """A constructor argument violates a documented precondition"""

    def __init__(self, argument: str, value, requirement: str,
                 optimizer_type: str = None, **kwargs):
        self.argument = argument
        self.value = value
        message = f"{argument} must be {requirement}, got {argument} = {value}"
        kwargs.setdefault('error_code', 'INVALID_ARGUMENT')
        kwargs.setdefault('suggestion', f"Pass a value for {argument} that is {requirement}")
        super().__init__(message, optimizer_type=optimizer_type, **kwargs)


class OptimizerWarning(UserWarning):
    """Optimizer warnings for surprising but non-failing conditions"""
    pass


def warn_optimizer(message: str, stacklevel=3):
    """Issue an optimizer warning"""
    warnings.warn(message, category=OptimizerWarning, stacklevel=stacklevel)


# Global error handling configuration
class ErrorConfig:
    """Global configuration for error handling"""

    def __init__(self):
        self.show_suggestions = True
        self.show_context = True
        self.max_node_info = 5  # Max number of nodes to show info for

    def configure(self, **kwargs):
        """Configure error handling behavior"""
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise KeyError(f"Unknown error handling option: {key}")
            setattr(self, key, value)


# Global instance
error_config = ErrorConfig()


def configure_error_handling(**kwargs):
    """Configure global error handling behavior"""
    error_config.configure(**kwargs)
