"""Structural contracts between the sequence wrapper and the modules it drives."""

from __future__ import annotations

from typing import Any
from typing import Protocol
from typing import Union
from typing import runtime_checkable

import torch


# A step buffer is a tensor (leaf) or an ordered list of buffers (node).
Buffer = Union[torch.Tensor, list["Buffer"]]

RECURRENT_METHODS = ("reset_state", "backward_through_time", "accumulate_through_time")


@runtime_checkable
class SubUnit(Protocol):
    """One constituent of a step module, carrying its own step buffers."""

    output: Any
    grad_input: Any


@runtime_checkable
class StepModuleLike(Protocol):
    """Explicit forward/backward module driven one time-step at a time."""

    def forward(self, input: Any) -> Any: ...

    def backward_input(self, input: Any, grad_output: Any) -> Any: ...

    def accumulate_grad(self, input: Any, grad_output: Any, scale: float = 1.0) -> None: ...

    def accumulate_and_update(self, input: Any, grad_output: Any, lr: float) -> None: ...

    def list_sub_units(self) -> list[SubUnit]: ...


@runtime_checkable
class RecurrentModuleLike(Protocol):
    """Step module that threads hidden state across steps and runs BPTT itself."""

    step: int
    grad_inputs: list[Any]

    def forward(self, input: Any) -> Any: ...

    def backward_input(self, input: Any, grad_output: Any) -> Any: ...

    def accumulate_grad(self, input: Any, grad_output: Any, scale: float = 1.0) -> None: ...

    def reset_state(self) -> None: ...

    def backward_through_time(self) -> list[Any]: ...

    def accumulate_through_time(self) -> None: ...

    def accumulate_and_update_through_time(self, lr: float) -> None: ...


def is_recurrent_module(module: object) -> bool:
    """Return True when module exposes every recurrent-mode operation."""
    return all(callable(getattr(module, name, None)) for name in RECURRENT_METHODS)
