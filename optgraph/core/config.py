"""
Global defaults read by graphs and optimizers at construction time
"""
from contextlib import contextmanager
from typing import Any, Dict

from optgraph.core.ir import DataType


MISSING_GRADIENT_POLICIES = ("skip", "zero", "raise")


class OptimConfig:
    """Process wide defaults"""

    def __init__(self):
        self.default_dtype = DataType.FLOAT32
        self.default_device = "cpu"
        # What an optimizer does with a parameter whose gradient is None
        self.missing_gradient = "skip"
        self.verbose = False

    def configure(self, **kwargs):
        """Configure defaults"""
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise KeyError(f"Unknown config option: {key}")
            if key == "missing_gradient" and value not in MISSING_GRADIENT_POLICIES:
                raise ValueError(
                    f"missing_gradient must be one of {MISSING_GRADIENT_POLICIES}, got {value!r}"
                )
            if key == "default_dtype" and not isinstance(value, DataType):
                value = DataType.from_numpy(value)
            setattr(self, key, value)

    def snapshot(self) -> Dict[str, Any]:
        return dict(vars(self))


# Global instance
config = OptimConfig()


def configure(**kwargs):
    """Configure global defaults"""
    config.configure(**kwargs)


@contextmanager
def config_context(**kwargs):
    """Temporarily override global defaults"""
    saved = config.snapshot()
    config.configure(**kwargs)
    try:
        yield config
    finally:
        for key, value in saved.items():
            setattr(config, key, value)
