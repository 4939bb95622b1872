"""
Per-step buffer pool for the sequence wrapper.

A step module writes its activations into `unit.output` and its input gradients
into `unit.grad_input` for every sub-unit it is made of. When the same module is
applied to several time-steps, each step needs its own copy of those buffers so
that backward for step t sees the activations of step t, not those of the last
step that ran. The pool keeps one StepState per step (sub-unit ordinal -> buffer)
and swaps the right buffers into the sub-units before each step runs.

VISUALIZED with a two-layer module over three steps:

    step 0 forward:  unit0.output -> A0   unit1.output -> B0   (fresh, captured)
    step 1 forward:  unit0.output -> A1   unit1.output -> B1   (fresh, captured)
    step 2 forward:  unit0.output -> A2   unit1.output -> B2   (fresh, captured)

    step 0 backward: unit0.output <- A0   unit1.output <- B0   (restored)
                     unit0.grad_input -> G0 ...                (fresh, captured)

    next epoch, step 0 forward: unit0.output <- A0 (resized in place, no allocation)

Buffers are stored by reference. Between steps the sub-unit fields point at
pool-owned storage and must not be inspected from outside.
"""

from __future__ import annotations

from typing import Any
from typing import Optional
from typing import Sequence

import torch

from nanoseq.logging import get_logger
from nanoseq.nn.contracts import Buffer
from nanoseq.nn.contracts import SubUnit
from nanoseq.nn.errors import InvalidStateShapeError
from nanoseq.nn.errors import MissingForwardStateError


logger = get_logger(__name__)

StepState = dict[int, Buffer]


def _describe(value: Any) -> str:
    if isinstance(value, torch.Tensor):
        return f"Tensor{tuple(value.shape)}"
    return type(value).__name__


class StepBufferPool:
    """Owns the output and grad-input buffers of every sub-unit for every step."""

    def __init__(self) -> None:
        self._output_states: dict[int, StepState] = {}
        self._grad_input_states: dict[int, StepState] = {}
        self.allocations = 0

    # ---- shape matching ----

    def reshape(self, existing: Optional[Buffer], shape_source: Buffer) -> Buffer:
        """
        Return a buffer shaped like shape_source, reusing existing storage.

        Nested lists are matched position by position. Content is not preserved.

        Raises:
            InvalidStateShapeError: existing and shape_source disagree on
                tensor/list nesting, or shape_source is neither.
        """
        if isinstance(shape_source, (list, tuple)):
            if existing is None:
                existing = []
            elif not isinstance(existing, list):
                raise InvalidStateShapeError(
                    f"Expected a nested buffer to match {_describe(shape_source)}, "
                    f"got {_describe(existing)}"
                )
            del existing[len(shape_source):]
            for i, source in enumerate(shape_source):
                if i < len(existing):
                    existing[i] = self.reshape(existing[i], source)
                else:
                    existing.append(self.reshape(None, source))
            return existing

        if not isinstance(shape_source, torch.Tensor):
            raise InvalidStateShapeError(
                f"Expecting nested tensors or lists, got {_describe(shape_source)}"
            )
        if existing is not None and not isinstance(existing, torch.Tensor):
            raise InvalidStateShapeError(
                f"Expected a tensor buffer to match {_describe(shape_source)}, "
                f"got {_describe(existing)}"
            )
        if (
            existing is None
            or existing.dtype != shape_source.dtype
            or existing.device != shape_source.device
        ):
            self.allocations += 1
            return shape_source.new_empty(shape_source.shape)
        return existing.resize_as_(shape_source)

    # ---- per-step state ----

    def has_output_state(self, step: int) -> bool:
        return step in self._output_states

    def output_state(self, step: int) -> StepState:
        """Return (creating if needed) the output StepState of a step."""
        return self._output_states.setdefault(step, {})

    def grad_input_state(self, step: int) -> StepState:
        """Return (creating if needed) the grad-input StepState of a step."""
        return self._grad_input_states.setdefault(step, {})

    @property
    def num_steps(self) -> int:
        return len(self._output_states)

    def restore_outputs(self, step: int, sub_units: Sequence[SubUnit]) -> None:
        """Point every sub-unit's output at this step's storage before forward."""
        state = self.output_state(step)
        before = self.allocations
        for i, unit in enumerate(sub_units):
            unit.output = self.reshape(state.get(i), unit.output)
        if self.allocations != before:
            logger.debug("Step %d: allocated %d output buffers", step, self.allocations - before)

    def restore_for_backward(self, step: int, sub_units: Sequence[SubUnit]) -> None:
        """
        Restore the outputs captured by forward for this step and point every
        sub-unit's grad_input at this step's storage.

        Raises:
            MissingForwardStateError: forward never captured this step.
        """
        outputs = self._output_states.get(step)
        if outputs is None:
            raise MissingForwardStateError(
                f"Backward visited step {step} before any forward captured it"
            )
        grad_inputs = self.grad_input_state(step)
        for i, unit in enumerate(sub_units):
            if i not in outputs:
                raise MissingForwardStateError(
                    f"No forward output captured for sub-unit {i} at step {step}"
                )
            unit.output = outputs[i]
            unit.grad_input = self.reshape(grad_inputs.get(i), unit.grad_input)

    def restore_for_accumulate(self, step: int, sub_units: Sequence[SubUnit]) -> None:
        """
        Restore the outputs and input gradients captured for this step, as they
        are. Parameter passes read the grad_input content left by backward, so
        nothing is reshaped here.

        Raises:
            MissingForwardStateError: forward or backward never captured this step.
        """
        outputs = self._output_states.get(step)
        if outputs is None:
            raise MissingForwardStateError(
                f"Parameter pass visited step {step} before any forward captured it"
            )
        grad_inputs = self._grad_input_states.get(step)
        if grad_inputs is None:
            raise MissingForwardStateError(
                f"Parameter pass visited step {step} before backward_input captured it"
            )
        for i, unit in enumerate(sub_units):
            if i not in outputs:
                raise MissingForwardStateError(
                    f"No forward output captured for sub-unit {i} at step {step}"
                )
            if i not in grad_inputs:
                raise MissingForwardStateError(
                    f"No input gradient captured for sub-unit {i} at step {step}"
                )
            unit.output = outputs[i]
            unit.grad_input = grad_inputs[i]

    def capture_outputs(self, step: int, sub_units: Sequence[SubUnit]) -> None:
        state = self.output_state(step)
        for i, unit in enumerate(sub_units):
            state[i] = unit.output

    def capture_grad_inputs(self, step: int, sub_units: Sequence[SubUnit]) -> None:
        state = self.grad_input_state(step)
        for i, unit in enumerate(sub_units):
            state[i] = unit.grad_input

    def __repr__(self) -> str:
        return (
            f"StepBufferPool(steps={self.num_steps}, "
            f"grad_steps={len(self._grad_input_states)}, allocations={self.allocations})"
        )
