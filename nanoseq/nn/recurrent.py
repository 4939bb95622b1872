"""
Elman recurrent step module with back-propagation through time (BPTT).

    h_t = tanh(x_t W_ih^T + h_{t-1} W_hh^T + b),   h_0 = 0,   output_t = h_t

The module threads its hidden state across `forward` calls itself, so a
`Sequencer` drives it in recurrent mode: `reset_state()` before a sequence,
one `forward` per step, then per-step `backward_input` / `accumulate_grad`
calls that only *prime* the gradient of step `self.step`, followed by a single
chained `backward_through_time()` / `accumulate_through_time()`.

VISUALIZED for 3 steps (g_t = primed grad_output of step t):

    forward:   x_1 -> h_1 -> h_2 -> h_3
                       ^      ^      ^
                      x_2    x_3

    BPTT:      d_3 = (g_3)              * (1 - h_3^2)
               d_2 = (g_2 + d_3 W_hh)   * (1 - h_2^2)
               d_1 = (g_1 + d_2 W_hh)   * (1 - h_1^2)

               grad_inputs[t] = d_t W_ih
               dW_ih += d_t^T x_t    dW_hh += d_t^T h_{t-1}    db += d_t
"""

from __future__ import annotations

import math
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from nanoseq.nn.modules import StepModule


def _outer(grad: torch.Tensor, value: torch.Tensor) -> torch.Tensor:
    if grad.dim() == 1:
        return torch.outer(grad, value)
    return grad.t().mm(value)


def _bias_grad(grad: torch.Tensor) -> torch.Tensor:
    return grad if grad.dim() == 1 else grad.sum(0)


class Recurrent(StepModule):
    """Single-layer tanh RNN over 1-D (features,) or 2-D (batch, features) steps."""

    _grad_buffers = {"weight_ih": "grad_weight_ih", "weight_hh": "grad_weight_hh", "bias": "grad_bias"}

    def __init__(self, input_size: int, hidden_size: int):
        super().__init__()
        if input_size < 1 or hidden_size < 1:
            raise ValueError("Recurrent sizes must be positive")
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.weight_ih = nn.Parameter(torch.empty(hidden_size, input_size))
        self.weight_hh = nn.Parameter(torch.empty(hidden_size, hidden_size))
        self.bias = nn.Parameter(torch.empty(hidden_size))
        self.register_buffer("grad_weight_ih", torch.zeros(hidden_size, input_size), persistent=False)
        self.register_buffer("grad_weight_hh", torch.zeros(hidden_size, hidden_size), persistent=False)
        self.register_buffer("grad_bias", torch.zeros(hidden_size), persistent=False)
        self.reset_parameters()
        self.reset_state()

    def reset_parameters(self) -> None:
        bound = 1.0 / math.sqrt(self.hidden_size)
        for param in (self.weight_ih, self.weight_hh, self.bias):
            nn.init.uniform_(param, -bound, bound)

    def reset_state(self) -> None:
        """Forget the rolling state of the previous sequence."""
        self.inputs: list[torch.Tensor] = []
        self.hiddens: list[torch.Tensor] = []
        self.grad_inputs: list[torch.Tensor] = []
        self._grad_outputs: dict[int, torch.Tensor] = {}
        self._acc_grad_outputs: dict[int, torch.Tensor] = {}
        # 1-indexed step the next backward/accumulate call refers to.
        self.step = 0

    # ---- forward ----

    @torch.no_grad()
    def forward(self, input: torch.Tensor) -> torch.Tensor:
        if input.dim() not in (1, 2) or input.size(-1) != self.input_size:
            raise ValueError(
                f"Recurrent expects (..., {self.input_size}) 1-D or 2-D steps, got {tuple(input.shape)}"
            )
        pre = F.linear(input, self.weight_ih, self.bias)
        if self.hiddens:
            pre.add_(F.linear(self.hiddens[-1], self.weight_hh))
        hidden = torch.tanh(pre)
        self.inputs.append(input)
        self.hiddens.append(hidden)
        self.step = len(self.hiddens)
        self.output = hidden
        return self.output

    # ---- per-step priming ----

    def _step_index(self) -> int:
        if not 1 <= self.step <= len(self.hiddens):
            raise ValueError(
                f"step must be in [1, {len(self.hiddens)}] (forwarded steps), got {self.step}"
            )
        return self.step - 1

    def backward_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        """Prime the output gradient of `self.step`; see `backward_through_time`."""
        self._grad_outputs[self._step_index()] = grad_output
        return self.grad_input

    @torch.no_grad()
    def accumulate_grad(self, input: torch.Tensor, grad_output: torch.Tensor, scale: float = 1.0) -> None:
        """Prime the scaled output gradient of `self.step`; see `accumulate_through_time`."""
        self._acc_grad_outputs[self._step_index()] = grad_output * scale

    def accumulate_and_update(self, input: torch.Tensor, grad_output: torch.Tensor, lr: float) -> None:
        """Prime with unit scale; the update happens in `accumulate_and_update_through_time`."""
        self.accumulate_grad(input, grad_output, 1.0)

    # ---- through time ----

    def _chain(self, grad_outputs: dict[int, torch.Tensor]) -> list[torch.Tensor]:
        """Pre-activation gradients d_t for every forwarded step, last to first."""
        deltas: list[Optional[torch.Tensor]] = [None] * len(self.hiddens)
        carried: Optional[torch.Tensor] = None
        for t in range(len(self.hiddens) - 1, -1, -1):
            hidden = self.hiddens[t]
            grad = grad_outputs.get(t)
            total = torch.zeros_like(hidden) if grad is None else grad.clone()
            if carried is not None:
                total.add_(carried)
            delta = total.mul_(1.0 - hidden * hidden)
            deltas[t] = delta
            carried = delta.mm(self.weight_hh) if delta.dim() == 2 else self.weight_hh.t().mv(delta)
        return deltas

    def _parameter_grads(self, grad_outputs: dict[int, torch.Tensor]) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        grad_ih = torch.zeros_like(self.weight_ih)
        grad_hh = torch.zeros_like(self.weight_hh)
        grad_b = torch.zeros_like(self.bias)
        for t, delta in enumerate(self._chain(grad_outputs)):
            grad_ih.add_(_outer(delta, self.inputs[t]))
            if t > 0:
                grad_hh.add_(_outer(delta, self.hiddens[t - 1]))
            grad_b.add_(_bias_grad(delta))
        return grad_ih, grad_hh, grad_b

    @torch.no_grad()
    def backward_through_time(self) -> list[torch.Tensor]:
        """Chain the primed gradients across all forwarded steps into `grad_inputs`."""
        deltas = self._chain(self._grad_outputs)
        self.grad_inputs = [
            delta.mm(self.weight_ih) if delta.dim() == 2 else self.weight_ih.t().mv(delta)
            for delta in deltas
        ]
        self._grad_outputs = {}
        if self.grad_inputs:
            self.grad_input = self.grad_inputs[0]
        return self.grad_inputs

    @torch.no_grad()
    def accumulate_through_time(self) -> None:
        grad_ih, grad_hh, grad_b = self._parameter_grads(self._acc_grad_outputs)
        self._acc_grad_outputs = {}
        self.grad_weight_ih.add_(grad_ih)
        self.grad_weight_hh.add_(grad_hh)
        self.grad_bias.add_(grad_b)

    @torch.no_grad()
    def accumulate_and_update_through_time(self, lr: float) -> None:
        """Apply param -= lr * grad directly, leaving the accumulated gradients untouched."""
        grad_ih, grad_hh, grad_b = self._parameter_grads(self._acc_grad_outputs)
        self._acc_grad_outputs = {}
        self.weight_ih.add_(grad_ih, alpha=-lr)
        self.weight_hh.add_(grad_hh, alpha=-lr)
        self.bias.add_(grad_b, alpha=-lr)

    def list_sub_units(self) -> list[StepModule]:
        return [self]

    def extra_repr(self) -> str:
        return f"input_size={self.input_size}, hidden_size={self.hidden_size}"
