"""
Step modules: layers with an explicit forward/backward protocol.

Unlike autograd layers, every step module keeps its activations in `self.output`
and its input gradient in `self.grad_input`, and computes into that existing
storage (`out=` / in-place). This is what lets a `Sequencer` give each time-step
its own buffers and reuse them across epochs without reallocating.

Protocol (per module):
    forward(input)                             -> output
    backward_input(input, grad_output)         -> grad_input
    accumulate_grad(input, grad_output, scale)    grad_param += scale * dL/dparam
    accumulate_and_update(input, grad_output, lr) param -= lr * dL/dparam

`backward_input` must follow a `forward` on the same input, and
`accumulate_grad` must follow a `backward_input`: containers read their
children's `output` and `grad_input` fields instead of recomputing them.

Example:
    net = Sequential(Linear(8, 16), Tanh(), Linear(16, 4))
    y = net.forward(x)
    gx = net.backward_input(x, gy)
    net.accumulate_grad(x, gy, scale=1.0)
"""

from __future__ import annotations

import math
from typing import Any
from typing import Iterator

import torch
import torch.nn as nn

from nanoseq.nn.contracts import SubUnit


def _like(buffer: Any, reference: torch.Tensor) -> torch.Tensor:
    """Return buffer if it can hold values of reference's dtype/device, else a new empty tensor."""
    if (
        isinstance(buffer, torch.Tensor)
        and buffer.dtype == reference.dtype
        and buffer.device == reference.device
    ):
        return buffer
    return reference.new_empty(0)


class StepModule(nn.Module):
    """Base class for modules driven through the explicit step protocol."""

    # Maps parameter attribute -> accumulated-gradient buffer attribute.
    _grad_buffers: dict[str, str] = {}

    def __init__(self) -> None:
        super().__init__()
        self.output: Any = torch.empty(0)
        self.grad_input: Any = torch.empty(0)

    def forward(self, input: Any) -> Any:
        raise NotImplementedError

    def backward_input(self, input: Any, grad_output: Any) -> Any:
        raise NotImplementedError

    def accumulate_grad(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        """Parameter-free modules have nothing to accumulate."""

    @torch.no_grad()
    def accumulate_and_update(self, input: Any, grad_output: Any, lr: float) -> None:
        """
        Accumulate straight into the parameters: point each gradient buffer at
        its parameter and accumulate with scale -lr.
        """
        swapped: dict[str, torch.Tensor] = {}
        for param_name, grad_name in self._grad_buffers.items():
            param = getattr(self, param_name)
            if param is None:
                continue
            swapped[grad_name] = getattr(self, grad_name)
            setattr(self, grad_name, param.data)
        try:
            self.accumulate_grad(input, grad_output, -lr)
        finally:
            for grad_name, grad in swapped.items():
                setattr(self, grad_name, grad)

    def step_children(self) -> list["StepModule"]:
        return [m for m in self.children() if isinstance(m, StepModule)]

    def list_sub_units(self) -> list[SubUnit]:
        """This module followed by the sub-units of its children, depth first."""
        units: list[SubUnit] = [self]
        for child in self.step_children():
            units.extend(child.list_sub_units())
        return units

    def gradients(self) -> Iterator[tuple[nn.Parameter, torch.Tensor]]:
        """Yield (parameter, accumulated gradient) pairs, recursively."""
        for param_name, grad_name in self._grad_buffers.items():
            param = getattr(self, param_name)
            if param is not None:
                yield param, getattr(self, grad_name)
        for child in self.step_children():
            yield from child.gradients()

    def zero_grad_parameters(self) -> None:
        for _, grad in self.gradients():
            grad.zero_()


# =============================================================================
# LEAF MODULES
# =============================================================================

class Identity(StepModule):
    """Copies input to output and grad_output to grad_input."""

    @torch.no_grad()
    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = _like(self.output, input)
        self.output.resize_as_(input).copy_(input)
        return self.output

    @torch.no_grad()
    def backward_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        self.grad_input = _like(self.grad_input, grad_output)
        self.grad_input.resize_as_(grad_output).copy_(grad_output)
        return self.grad_input


class Linear(StepModule):
    """
    Affine layer y = x W^T + b over a single vector (in,) or a batch (B, in).

    Gradient buffers `grad_weight` and `grad_bias` are registered as
    non-persistent buffers so they follow `.to()` but stay out of state_dict.
    """

    _grad_buffers = {"weight": "grad_weight", "bias": "grad_bias"}

    def __init__(self, in_features: int, out_features: int, bias: bool = True):
        super().__init__()
        if in_features < 1 or out_features < 1:
            raise ValueError("Linear features must be positive")
        self.in_features = in_features
        self.out_features = out_features
        self.weight = nn.Parameter(torch.empty(out_features, in_features))
        self.register_buffer("grad_weight", torch.zeros(out_features, in_features), persistent=False)
        if bias:
            self.bias = nn.Parameter(torch.empty(out_features))
            self.register_buffer("grad_bias", torch.zeros(out_features), persistent=False)
        else:
            self.register_parameter("bias", None)
            self.register_buffer("grad_bias", None, persistent=False)
        self.reset_parameters()

    def reset_parameters(self) -> None:
        bound = 1.0 / math.sqrt(self.in_features)
        nn.init.uniform_(self.weight, -bound, bound)
        if self.bias is not None:
            nn.init.uniform_(self.bias, -bound, bound)

    def _check_input(self, input: torch.Tensor) -> None:
        if input.dim() not in (1, 2):
            raise ValueError(f"Linear expects a 1-D or 2-D input, got {input.dim()}-D")
        if input.size(-1) != self.in_features:
            raise ValueError(
                f"Linear expects {self.in_features} input features, got {input.size(-1)}"
            )

    @torch.no_grad()
    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self._check_input(input)
        self.output = _like(self.output, input)
        if input.dim() == 1:
            self.output.resize_(self.out_features)
            if self.bias is None:
                torch.mv(self.weight, input, out=self.output)
            else:
                torch.addmv(self.bias, self.weight, input, out=self.output)
        else:
            self.output.resize_(input.size(0), self.out_features)
            if self.bias is None:
                torch.mm(input, self.weight.t(), out=self.output)
            else:
                torch.addmm(self.bias, input, self.weight.t(), out=self.output)
        return self.output

    @torch.no_grad()
    def backward_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        self.grad_input = _like(self.grad_input, grad_output)
        self.grad_input.resize_as_(input)
        if input.dim() == 1:
            torch.mv(self.weight.t(), grad_output, out=self.grad_input)
        else:
            torch.mm(grad_output, self.weight, out=self.grad_input)
        return self.grad_input

    @torch.no_grad()
    def accumulate_grad(self, input: torch.Tensor, grad_output: torch.Tensor, scale: float = 1.0) -> None:
        if input.dim() == 1:
            self.grad_weight.addr_(grad_output, input, alpha=scale)
            if self.bias is not None:
                self.grad_bias.add_(grad_output, alpha=scale)
        else:
            self.grad_weight.addmm_(grad_output.t(), input, alpha=scale)
            if self.bias is not None:
                self.grad_bias.add_(grad_output.sum(0), alpha=scale)

    def extra_repr(self) -> str:
        return f"in_features={self.in_features}, out_features={self.out_features}, bias={self.bias is not None}"


class Tanh(StepModule):
    """tanh activation. Backward reads this module's own `output`."""

    @torch.no_grad()
    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = _like(self.output, input)
        self.output.resize_as_(input)
        torch.tanh(input, out=self.output)
        return self.output

    @torch.no_grad()
    def backward_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        # d tanh(x) / dx = 1 - tanh(x)^2
        self.grad_input = _like(self.grad_input, grad_output)
        self.grad_input.resize_as_(self.output)
        torch.mul(self.output, self.output, out=self.grad_input)
        self.grad_input.neg_().add_(1.0).mul_(grad_output)
        return self.grad_input


class Sigmoid(StepModule):
    """Logistic activation. Backward reads this module's own `output`."""

    @torch.no_grad()
    def forward(self, input: torch.Tensor) -> torch.Tensor:
        self.output = _like(self.output, input)
        self.output.resize_as_(input)
        torch.sigmoid(input, out=self.output)
        return self.output

    @torch.no_grad()
    def backward_input(self, input: torch.Tensor, grad_output: torch.Tensor) -> torch.Tensor:
        # d sigmoid(x) / dx = s * (1 - s)
        self.grad_input = _like(self.grad_input, grad_output)
        self.grad_input.resize_as_(self.output).copy_(self.output)
        self.grad_input.neg_().add_(1.0).mul_(self.output).mul_(grad_output)
        return self.grad_input


# =============================================================================
# CONTAINERS
# =============================================================================

class _Container(StepModule):
    def __init__(self, *modules: StepModule):
        super().__init__()
        if not modules:
            raise ValueError(f"{type(self).__name__} needs at least one module")
        for i, module in enumerate(modules):
            if not isinstance(module, StepModule):
                raise TypeError(f"Expected a StepModule, got {type(module).__name__}")
            self.add_module(str(i), module)

    def __len__(self) -> int:
        return len(self._modules)

    def __getitem__(self, idx: int) -> StepModule:
        return self.step_children()[idx]

    def __iter__(self) -> Iterator[StepModule]:
        return iter(self.step_children())


class Sequential(_Container):
    """
    Chains step modules. `output` aliases the last child's output and
    `grad_input` aliases the first child's grad_input.
    """

    @torch.no_grad()
    def forward(self, input: Any) -> Any:
        current = input
        for module in self.step_children():
            current = module.forward(current)
        self.output = current
        return self.output

    @torch.no_grad()
    def backward_input(self, input: Any, grad_output: Any) -> Any:
        modules = self.step_children()
        grad = grad_output
        for i in range(len(modules) - 1, 0, -1):
            grad = modules[i].backward_input(modules[i - 1].output, grad)
        self.grad_input = modules[0].backward_input(input, grad)
        return self.grad_input

    def _walk_backward(self, input: Any, grad_output: Any, fn_name: str, value: float) -> None:
        modules = self.step_children()
        grad = grad_output
        for i in range(len(modules) - 1, 0, -1):
            getattr(modules[i], fn_name)(modules[i - 1].output, grad, value)
            grad = modules[i].grad_input
        getattr(modules[0], fn_name)(input, grad, value)

    def accumulate_grad(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        self._walk_backward(input, grad_output, "accumulate_grad", scale)

    def accumulate_and_update(self, input: Any, grad_output: Any, lr: float) -> None:
        self._walk_backward(input, grad_output, "accumulate_and_update", lr)


class ConcatTable(_Container):
    """
    Applies every child to the same input. `output` is a list with one entry per
    child; `grad_output` must be a list of the same length, and `grad_input` is
    the sum of the children's input gradients.
    """

    def __init__(self, *modules: StepModule):
        super().__init__(*modules)
        self.output = []

    def _check_grad_output(self, grad_output: Any) -> None:
        if not isinstance(grad_output, (list, tuple)) or len(grad_output) != len(self):
            raise ValueError(f"ConcatTable expects a list of {len(self)} output gradients")

    @torch.no_grad()
    def forward(self, input: Any) -> list[Any]:
        outputs = self.output if isinstance(self.output, list) else []
        modules = self.step_children()
        del outputs[len(modules):]
        for i, module in enumerate(modules):
            out = module.forward(input)
            if i < len(outputs):
                outputs[i] = out
            else:
                outputs.append(out)
        self.output = outputs
        return self.output

    @torch.no_grad()
    def backward_input(self, input: Any, grad_output: Any) -> torch.Tensor:
        self._check_grad_output(grad_output)
        for i, module in enumerate(self.step_children()):
            grad = module.backward_input(input, grad_output[i])
            if i == 0:
                self.grad_input = _like(self.grad_input, grad)
                self.grad_input.resize_as_(grad).copy_(grad)
            else:
                self.grad_input.add_(grad)
        return self.grad_input

    def accumulate_grad(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        self._check_grad_output(grad_output)
        for i, module in enumerate(self.step_children()):
            module.accumulate_grad(input, grad_output[i], scale)

    def accumulate_and_update(self, input: Any, grad_output: Any, lr: float) -> None:
        self._check_grad_output(grad_output)
        for i, module in enumerate(self.step_children()):
            module.accumulate_and_update(input, grad_output[i], lr)
