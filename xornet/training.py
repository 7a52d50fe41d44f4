"""
Train a small feed forward network on XOR.

By default two models are built: one for training on the whole dataset at
once, and one for predicting single samples, which receives the trained
weights. With --simple, a single training model is used and its batch
predictions are reported instead.
"""

import argparse
import os
import sys

import numpy as np

from engine import draw_graph
from nn import FeedForwardModel, ModelConfig
from optimizers import AdamSolver, Solver, VanillaSolver


SOLVERS = {"adam": AdamSolver, "vanilla": VanillaSolver}


def xor_dataset() -> tuple[np.ndarray, np.ndarray]:
    features = np.array([[0, 0], [0, 1], [1, 0], [1, 1]], dtype=np.float64)
    labels = np.array([[0], [1], [1], [0]], dtype=np.float64)
    return features, labels


def train(
    model: FeedForwardModel,
    features: np.ndarray,
    labels: np.ndarray,
    solver: Solver,
    epochs: int,
    log_every: int = 1,
    verbose: bool = True,
) -> list[float]:
    losses = []
    for epoch in range(epochs):
        loss = model.fit_batch(features, labels, solver)
        losses.append(loss)
        if verbose and epoch % log_every == 0:
            print(f"Epoch: {epoch}, Loss: {loss:.3f}")
    return losses


def predict_samples(
    model: FeedForwardModel, features: np.ndarray, labels: np.ndarray
) -> list[float]:
    """Run the model on one sample at a time, as if predicting in real time."""
    predictions = []
    for sample, label in zip(features, labels):
        predicted = model.predict_single(sample)
        predictions.append(float(predicted[0]))
        print(
            f"Input: {sample.tolist()}, Predicted Output: {predicted[0]:.3f}, Actual Output: {label[0]:.3f}"
        )
    return predictions


def plot_losses(losses: list[float], path: str) -> None:
    # Imported here so that training doesn't need a plotting backend.
    import matplotlib

    matplotlib.use("Agg")
    from matplotlib import pyplot as plt

    plt.figure(figsize=(6, 4))
    plt.plot(losses)
    plt.yscale("log")
    plt.xlabel("epoch")
    plt.ylabel("loss")
    plt.title("Training loss")
    plt.savefig(path)
    plt.close()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a feed forward network on XOR")
    parser.add_argument("--epochs", type=int, default=1000)
    parser.add_argument("--learning-rate", type=float, default=0.05)
    parser.add_argument("--hidden", type=int, default=5, help="number of hidden nodes")
    parser.add_argument(
        "--seed",
        type=int,
        # String defaults go through `type` too, so a bad value is a usage error.
        default=os.getenv("XORNET_SEED") or None,
        help="random seed, defaults to $XORNET_SEED",
    )
    parser.add_argument("--solver", choices=sorted(SOLVERS), default="adam")
    parser.add_argument("--log-every", type=int, default=1)
    parser.add_argument("--quiet", action="store_true", help="don't print the loss per epoch")
    parser.add_argument("--plot", metavar="PATH", help="save a plot of the loss curve")
    parser.add_argument("--draw-graph", metavar="PATH", help="render the training graph")
    parser.add_argument(
        "--simple",
        action="store_true",
        help="use the training model for predictions, without a separate inference model",
    )
    args = parser.parse_args(argv)
    if args.epochs < 1:
        parser.error("--epochs must be at least 1")
    if args.log_every < 1:
        parser.error("--log-every must be at least 1")
    if args.hidden < 1:
        parser.error("--hidden must be at least 1")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    features, labels = xor_dataset()
    config = ModelConfig(num_hidden=args.hidden, training_batch_size=len(features))

    training_model = FeedForwardModel(True, config, seed=args.seed)
    solver = SOLVERS[args.solver](learn_rate=args.learning_rate)

    if args.draw_graph:
        path = draw_graph(training_model.loss_value.node, args.draw_graph)
        print(f"Graph rendered to {path}")

    losses = train(
        training_model,
        features,
        labels,
        solver,
        args.epochs,
        log_every=args.log_every,
        verbose=not args.quiet,
    )
    print(f"Final loss: {losses[-1]:.4f}")

    if args.plot:
        plot_losses(losses, args.plot)

    if args.simple:
        loss, outputs = training_model.evaluate(features, labels)
        print("\nPredictions:")
        for sample, label, output in zip(features, labels, outputs):
            print(f"X: {sample.tolist()}, Y: {label[0]}, YP: {output[0]:.2f}")
        return 0

    testing_model = FeedForwardModel(False, config, seed=args.seed)
    training_model.copy_weights_to_model(testing_model)
    predict_samples(testing_model, features, labels)
    return 0


if __name__ == "__main__":
    sys.exit(main())
