"""
Model runtime contract.

The scheduler and the storage never build or train networks themselves.
They talk to the model runtime through the small surface defined here.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence, Union, runtime_checkable


@runtime_checkable
class ModelHandle(Protocol):
    """
    A built model instance of one variant.

    Attributes:
        config: Construction config; ``config["features"]`` is the feature
            count the weights are valid for.
        is_compiled: Whether compile_model() has been applied.
    """

    config: dict[str, Any]
    is_compiled: bool

    def build_model(self) -> None: ...

    def compile_model(self) -> None: ...

    def get_weights(self) -> Sequence[Any]: ...

    def set_weights(self, weights: Sequence[Any]) -> None: ...


ModelFactory = Callable[[dict[str, Any]], ModelHandle]


@dataclass
class TrainingOutcome:
    """
    What a training function hands back to the scheduler.

    Attributes:
        model: Trained handle whose weights should be persisted, or None
            to skip saving weights (e.g. accuracy below threshold).
        metrics: Final metrics recorded in the training history.
        details: Extra fields merged into the history entry.
    """

    model: ModelHandle | None = None
    metrics: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)


TrainFunction = Callable[[str, str, dict[str, Any]], Union[TrainingOutcome, dict[str, Any], None]]


def as_outcome(result: TrainingOutcome | dict[str, Any] | None) -> TrainingOutcome:
    """Normalize whatever a training function returned."""
    if isinstance(result, TrainingOutcome):
        return result
    if result is None:
        return TrainingOutcome()
    if isinstance(result, dict):
        return TrainingOutcome(metrics=dict(result))
    raise TypeError(f"Unsupported training result type: {type(result).__name__}")
