"""
Registration system so operations can register themselves
Each op type maps to a numpy kernel, a shape inference function and a
symbolic gradient function
"""
from typing import Dict, Callable, Optional, List, Tuple


class OpRegistry:
    """
    Registry for operations that maps op types to kernels, shape inference
    and gradient functions
    """
    _instance = None  # Singleton instance

    @classmethod
    def get_instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self):
        # Only initialize if this is the singleton instance
        if self.__class__._instance is not None:
            return

        # Maps from op_type to forward kernel: kernel(node, *input_values) -> ndarray
        self.kernels: Dict[str, Callable] = {}

        # Maps from op_type to shape inference function
        self.shape_infer_funcs: Dict[str, Callable] = {}

        # Maps from op_type to gradient function:
        # grad_fn(graph, node, grad) -> list of input gradients (None where not differentiable)
        self.gradient_funcs: Dict[str, Callable] = {}

    def register_kernel(self, op_type: str, func: Callable = None):
        """
        Register the forward kernel for an operation type

        Can be used as a decorator:
        @registry.register_kernel("Add")
        def add_kernel(node, x, y):
            ...
        """
        def decorator(func):
            self.kernels[op_type] = func
            return func

        if func is not None:
            return decorator(func)
        return decorator

    def register_shape_inference(self, op_type: str, func: Callable = None):
        """
        Register a shape inference function for an operation type

        Can be used as a decorator:
        @registry.register_shape_inference("Add")
        def infer_add_shape(node, input_shapes):
            ...

        Or directly:
        registry.register_shape_inference("Add", infer_add_shape)
        """
        def decorator(func):
            self.shape_infer_funcs[op_type] = func
            return func

        if func is not None:
            return decorator(func)
        return decorator

    def register_gradient(self, op_type: str, func: Callable = None):
        """Register a symbolic gradient function for an operation type"""
        def decorator(func):
            self.gradient_funcs[op_type] = func
            return func

        if func is not None:
            return decorator(func)
        return decorator

    def get_kernel(self, op_type: str) -> Optional[Callable]:
        return self.kernels.get(op_type)

    def get_shape_inference(self, op_type: str) -> Optional[Callable]:
        """Get the shape inference function for an operation type"""
        return self.shape_infer_funcs.get(op_type)

    def get_gradient(self, op_type: str) -> Optional[Callable]:
        return self.gradient_funcs.get(op_type)

    def infer_shape(self, node, input_shapes: List[Tuple[int, ...]]) -> Optional[Tuple[int, ...]]:
        """
        Infer the output shape for a node given input shapes

        Args:
            node: The IR node
            input_shapes: List of shapes of the input nodes

        Returns:
            The inferred output shape, or None if the op has no shape function
        """
        infer_func = self.get_shape_inference(node.op_type)
        if infer_func:
            return infer_func(node, input_shapes)
        return None


# Create singleton instance
registry = OpRegistry.get_instance()
