"""
nano-seq package entrypoint.

Exposes the configuration dataclasses and the sequence wrapper; layers live in
`nanoseq.nn` and the LabelMe dataset in `nanoseq.data`.
"""

from nanoseq.config import Config
from nanoseq.config import LabelMeConfig
from nanoseq.config import LoggingConfig
from nanoseq.nn import Sequencer
from nanoseq.nn import SequencerMode

__version__ = "0.1.0"

__all__ = [
    "Config",
    "LabelMeConfig",
    "LoggingConfig",
    "Sequencer",
    "SequencerMode",
    "__version__",
]
