"""
Sequencer: applies one step module to every element of an input sequence.

    seq = Sequencer(Sequential(Linear(8, 16), Tanh()))
    outputs = seq.forward([x_1, x_2, x_3])                 # [y_1, y_2, y_3]
    grads = seq.backward_input([x_1, x_2, x_3], [g_1, g_2, g_3])
    seq.accumulate_grad([x_1, x_2, x_3], [g_1, g_2, g_3], scale=1.0)

Two execution modes, fixed when the Sequencer is built:

RECURRENT (the inner module has reset_state / backward_through_time /
accumulate_through_time): the module keeps its own hidden state. Forward resets
it once and runs every step; backward primes each step's gradient (with the
module's 1-indexed `step` counter set) and then asks the module to chain them
through time.

STEPWISE (any other step module): the module is stateless across steps, but its
sub-units hold step-specific `output`/`grad_input` buffers. The Sequencer keeps
those buffers per step in a `StepBufferPool`:

    for each step t:
        restore   sub-unit buffers of step t   (allocated on the first visit only)
        compute   forward / backward_input / accumulate_grad
        capture   sub-unit buffers of step t

so that backward for step t sees exactly the activations forward produced for
step t, and a second epoch over the same sequence allocates nothing.

The sub-unit fields are borrowed by the pool for the duration of a step call and
must not be read from outside between steps. Steps run strictly in order; a
Sequencer is not safe to drive from several threads.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from typing import Callable
from typing import Optional
from typing import Sequence

import torch.nn as nn

from nanoseq.logging import get_logger
from nanoseq.nn.buffers import StepBufferPool
from nanoseq.nn.contracts import is_recurrent_module
from nanoseq.nn.errors import LengthMismatchError
from nanoseq.nn.errors import MissingGradientsError
from nanoseq.nn.errors import TypeMismatchError


logger = get_logger(__name__)


class SequencerMode(str, Enum):
    RECURRENT = "recurrent"
    STEPWISE = "stepwise"


def _check_sequence(value: Any, name: str) -> None:
    if not isinstance(value, (list, tuple)):
        raise TypeMismatchError(f"Expecting {name} to be a list of steps, got {type(value).__name__}")


def _check_gradients(inputs: Any, grad_outputs: Any) -> None:
    _check_sequence(inputs, "input")
    _check_sequence(grad_outputs, "grad_output")
    if len(grad_outputs) != len(inputs):
        raise LengthMismatchError(
            f"grad_output should have as many elements as input ({len(grad_outputs)} != {len(inputs)})"
        )


class Sequencer(nn.Module):
    """Wraps a step module and runs it over ordered lists of time-steps."""

    def __init__(self, module: nn.Module):
        super().__init__()
        for name in ("forward", "backward_input", "accumulate_grad"):
            if not callable(getattr(module, name, None)):
                raise TypeError(f"Sequencer module must implement {name}()")
        self.module = module
        self._mode = SequencerMode.RECURRENT if is_recurrent_module(module) else SequencerMode.STEPWISE
        if self._mode is SequencerMode.STEPWISE and not callable(getattr(module, "list_sub_units", None)):
            raise TypeError("Stepwise Sequencer module must implement list_sub_units()")
        self._pool = StepBufferPool()
        self._updates_through_time = callable(getattr(module, "accumulate_and_update_through_time", None))
        self.output: list[Any] = []
        self.grad_input: list[Any] = []
        logger.debug("Sequencer over %s resolved to %s mode", type(module).__name__, self._mode.value)

    @property
    def mode(self) -> SequencerMode:
        return self._mode

    @property
    def is_recurrent(self) -> bool:
        return self._mode is SequencerMode.RECURRENT

    @property
    def pool(self) -> StepBufferPool:
        return self._pool

    # ---- forward ----

    def forward(self, inputs: Sequence[Any]) -> list[Any]:
        """Run the module once per step and return the per-step outputs."""
        _check_sequence(inputs, "input")
        self.output = []
        outputs: list[Any] = []
        if self.is_recurrent:
            self.module.reset_state()
            for input in inputs:
                outputs.append(self.module.forward(input))
        else:
            for step, input in enumerate(inputs):
                sub_units = self.module.list_sub_units()
                self._pool.restore_outputs(step, sub_units)
                outputs.append(self.module.forward(input))
                self._pool.capture_outputs(step, sub_units)
        self.output = outputs
        return self.output

    # ---- backward ----

    def backward_input(self, inputs: Sequence[Any], grad_outputs: Sequence[Any]) -> list[Any]:
        """Return the gradient w.r.t. every input step."""
        _check_gradients(inputs, grad_outputs)
        self.grad_input = []
        if self.is_recurrent:
            for step, input in enumerate(inputs):
                self.module.step = step + 1
                self.module.backward_input(input, grad_outputs[step])
            # back-propagate through time (BPTT)
            self.module.backward_through_time()
            grad_inputs = getattr(self.module, "grad_inputs", None)
            if grad_inputs is None:
                raise MissingGradientsError("Recurrent module did not fill grad_inputs")
            if len(grad_inputs) != len(inputs):
                raise MissingGradientsError(
                    f"Recurrent module produced {len(grad_inputs)} grad_inputs for {len(inputs)} steps"
                )
            self.grad_input = list(grad_inputs)
        else:
            self.grad_input = self._run_stepwise(inputs, grad_outputs, self.module.backward_input)
        return self.grad_input

    def accumulate_grad(self, inputs: Sequence[Any], grad_outputs: Sequence[Any], scale: float = 1.0) -> None:
        """Accumulate parameter gradients over every step, scaled by `scale`."""
        _check_gradients(inputs, grad_outputs)
        if self.is_recurrent:
            for step, input in enumerate(inputs):
                self.module.step = step + 1
                self.module.accumulate_grad(input, grad_outputs[step], scale)
            self.module.accumulate_through_time()
        else:
            self._run_stepwise(
                inputs,
                grad_outputs,
                lambda input, grad_output: self.module.accumulate_grad(input, grad_output, scale),
                restore=self._pool.restore_for_accumulate,
            )

    def accumulate_and_update(self, inputs: Sequence[Any], grad_outputs: Sequence[Any], lr: float) -> None:
        """Accumulate parameter gradients straight into the parameters (param -= lr * grad)."""
        _check_gradients(inputs, grad_outputs)
        if self.is_recurrent:
            if not self._updates_through_time:
                raise TypeError(
                    f"{type(self.module).__name__} does not implement accumulate_and_update_through_time()"
                )
            for step, input in enumerate(inputs):
                self.module.step = step + 1
                self.module.accumulate_grad(input, grad_outputs[step], 1.0)
            self.module.accumulate_and_update_through_time(lr)
        else:
            self._run_stepwise(
                inputs,
                grad_outputs,
                lambda input, grad_output: self.module.accumulate_and_update(input, grad_output, lr),
                restore=self._pool.restore_for_accumulate,
            )

    def _run_stepwise(
        self,
        inputs: Sequence[Any],
        grad_outputs: Sequence[Any],
        fn: Callable[[Any, Any], Any],
        restore: Optional[Callable[[int, Sequence[Any]], None]] = None,
    ) -> list[Any]:
        restore = restore or self._pool.restore_for_backward
        results: list[Any] = []
        for step, input in enumerate(inputs):
            sub_units = self.module.list_sub_units()
            restore(step, sub_units)
            results.append(fn(input, grad_outputs[step]))
            self._pool.capture_grad_inputs(step, sub_units)
        return results

    # ---- parameters ----

    def zero_grad_parameters(self) -> None:
        self.module.zero_grad_parameters()

    def extra_repr(self) -> str:
        return f"mode={self._mode.value}"
