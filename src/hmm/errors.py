"""
Exception types raised by the state-discovery engine.
"""


class ModelNotFittedError(RuntimeError):
    """Raised when decoding, scoring, serializing or transforming before fit()"""


class TrainingError(RuntimeError):
    """Raised when the isolated training process fails or reports an error"""


class InsufficientDataError(ValueError):
    """Raised when too few flows are available to train a model"""
