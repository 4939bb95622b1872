"""Errors raised by the sequence wrapper and its step buffer pool."""

from __future__ import annotations


class SequencerError(RuntimeError):
    """Base class for sequence-wrapper contract violations."""


class TypeMismatchError(SequencerError, TypeError):
    """An input or gradient argument is not an ordered list of steps."""


class LengthMismatchError(SequencerError, ValueError):
    """The gradient list does not have one entry per input step."""


class InvalidStateShapeError(SequencerError):
    """A stored step buffer and its shape source disagree on nesting."""


class MissingForwardStateError(SequencerError):
    """A backward pass visited a step that forward never captured."""


class MissingGradientsError(SequencerError):
    """A recurrent module did not produce one input gradient per step."""
