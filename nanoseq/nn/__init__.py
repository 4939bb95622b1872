"""Sequence wrapper and explicit-backward step modules."""

from nanoseq.nn.buffers import StepBufferPool
from nanoseq.nn.errors import InvalidStateShapeError
from nanoseq.nn.errors import LengthMismatchError
from nanoseq.nn.errors import MissingForwardStateError
from nanoseq.nn.errors import MissingGradientsError
from nanoseq.nn.errors import SequencerError
from nanoseq.nn.errors import TypeMismatchError
from nanoseq.nn.modules import ConcatTable
from nanoseq.nn.modules import Identity
from nanoseq.nn.modules import Linear
from nanoseq.nn.modules import Sequential
from nanoseq.nn.modules import Sigmoid
from nanoseq.nn.modules import StepModule
from nanoseq.nn.modules import Tanh
from nanoseq.nn.recurrent import Recurrent
from nanoseq.nn.sequencer import Sequencer
from nanoseq.nn.sequencer import SequencerMode

__all__ = [
    "ConcatTable",
    "Identity",
    "InvalidStateShapeError",
    "LengthMismatchError",
    "Linear",
    "MissingForwardStateError",
    "MissingGradientsError",
    "Recurrent",
    "Sequencer",
    "SequencerError",
    "SequencerMode",
    "Sequential",
    "Sigmoid",
    "StepBufferPool",
    "StepModule",
    "Tanh",
    "TypeMismatchError",
]
