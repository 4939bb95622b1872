"""
Train a toy sequence model with explicit forward/backward passes.

The task: predict, at every step, the running mean of a noisy 1-D signal.
Two models are available:
    --model rnn     Sequencer(Recurrent)            hidden state carried across steps
    --model mlp     Sequencer(Linear-Tanh-Linear)   independent per-step model

    python examples/train_sequencer.py --model rnn --steps 10 --iters 300
"""

from __future__ import annotations

import argparse
import os
import sys

import torch
from tqdm import tqdm

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nanoseq.logging import get_logger
from nanoseq.logging import setup_logging
from nanoseq.nn import Linear
from nanoseq.nn import Recurrent
from nanoseq.nn import Sequencer
from nanoseq.nn import Sequential
from nanoseq.nn import Tanh


setup_logging(log_level="INFO")
logger = get_logger(__name__)


def make_batch(batch_size: int, steps: int) -> tuple[list[torch.Tensor], list[torch.Tensor]]:
    signal = torch.randn(steps, batch_size, 1)
    counts = torch.arange(1, steps + 1, dtype=torch.float32).view(steps, 1, 1)
    targets = signal.cumsum(0) / counts
    return list(signal), list(targets)


def build_model(name: str, hidden: int) -> tuple[Sequencer, Linear]:
    """Sequence encoder plus a per-step linear readout."""
    if name == "rnn":
        encoder = Sequencer(Recurrent(1, hidden))
    else:
        encoder = Sequencer(Sequential(Linear(1, hidden), Tanh(), Linear(hidden, hidden)))
    return encoder, Sequencer(Linear(hidden, 1))


def main() -> None:
    parser = argparse.ArgumentParser(description="Train a toy model with the Sequencer")
    parser.add_argument("--model", choices=["rnn", "mlp"], default="rnn")
    parser.add_argument("--steps", type=int, default=10)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--hidden", type=int, default=16)
    parser.add_argument("--iters", type=int, default=300)
    parser.add_argument("--lr", type=float, default=0.05)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    torch.manual_seed(args.seed)
    encoder, readout = build_model(args.model, args.hidden)
    logger.info("Encoder: %s", encoder)
    logger.info("Readout: %s", readout)

    progress = tqdm(range(args.iters), desc="Training")
    for it in progress:
        inputs, targets = make_batch(args.batch_size, args.steps)

        hidden = encoder.forward(inputs)
        predictions = readout.forward(hidden)

        loss = sum(((p - t) ** 2).mean() for p, t in zip(predictions, targets)) / args.steps
        grad_predictions = [
            2.0 * (p - t) / (p.numel() * args.steps) for p, t in zip(predictions, targets)
        ]

        grad_hidden = readout.backward_input(hidden, grad_predictions)
        encoder.backward_input(inputs, grad_hidden)

        readout.accumulate_and_update(hidden, grad_predictions, lr=args.lr)
        encoder.accumulate_and_update(inputs, grad_hidden, lr=args.lr)

        if it % 50 == 0 or it == args.iters - 1:
            progress.set_postfix(loss=f"{float(loss):.4f}")
            logger.debug("iter %d loss %.5f", it, float(loss))

    logger.info("Final loss: %.5f", float(loss))
    logger.info("Encoder pool: %s", encoder.pool)


if __name__ == "__main__":
    main()
