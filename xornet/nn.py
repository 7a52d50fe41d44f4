from dataclasses import dataclass

import numpy as np

import engine
from engine import Graph, Node, TapeMachine
from optimizers import Solver


class InvalidModeError(RuntimeError):
    """A training-only operation was called on an inference model, or vice versa."""


class ShapeMismatchError(ValueError):
    """Weights can't be copied between models of different sizes."""


@dataclass(frozen=True)
class ModelConfig:
    num_inputs: int = 2
    # 5 hidden nodes are less likely to get stuck in a local minimum than 2.
    num_hidden: int = 5
    num_outputs: int = 1
    # Train on the whole XOR dataset at once, predict one sample at a time.
    training_batch_size: int = 4
    inference_batch_size: int = 1
    init_gain: float = 1.0

    def __post_init__(self):
        for field in (
            "num_inputs",
            "num_hidden",
            "num_outputs",
            "training_batch_size",
        ):
            if getattr(self, field) < 1:
                raise ValueError(f"{field} must be at least 1, got {getattr(self, field)}")
        # predict_single always feeds a batch of one sample.
        if self.inference_batch_size != 1:
            raise ValueError(
                f"inference_batch_size must be 1, got {self.inference_batch_size}"
            )

    def batch_size(self, is_training: bool) -> int:
        return self.training_batch_size if is_training else self.inference_batch_size


class FeedForwardModel:
    """
    A dense feed forward network with one hidden layer, living on its own
    graph.

    The model is built either for training or for inference. Only a
    training model has the target and loss nodes, and the batch size is
    baked into every node, so the usual setup is two models with the same
    sizes: train one on whole batches, then copy its weights into the other
    to predict single samples.
    """

    def __init__(
        self,
        is_training: bool,
        config: ModelConfig | None = None,
        seed: int | None = None,
    ):
        self.config = config or ModelConfig()
        self.is_training = is_training
        self.batch_size = self.config.batch_size(is_training)
        num_inputs = self.config.num_inputs
        num_hidden = self.config.num_hidden
        num_outputs = self.config.num_outputs
        rng = np.random.default_rng(seed)

        self.graph = Graph()
        self.input_layer = self.graph.placeholder((self.batch_size, num_inputs), name="input")

        # The input to each layer gets an extra column of ones appended, so
        # each weight matrix has one more row, which acts as the bias.
        init = engine.glorot_normal(self.config.init_gain)
        self.hidden_layer_weights = self.graph.parameter(
            (num_inputs + 1, num_hidden), init, name="hidden_weights", rng=rng
        )
        self.output_layer_weights = self.graph.parameter(
            (num_hidden + 1, num_outputs), init, name="output_weights", rng=rng
        )
        bias = self.graph.constant(np.ones((self.batch_size, 1)), name="bias")

        input_with_bias = engine.concat(1, self.input_layer, bias)
        hidden_layer = engine.sigmoid(input_with_bias @ self.hidden_layer_weights)
        hidden_layer_with_bias = engine.concat(1, hidden_layer, bias)
        output_layer = engine.sigmoid(hidden_layer_with_bias @ self.output_layer_weights)
        output_layer.name = "output"

        self.output_value = engine.read(output_layer)

        self.target_output_layer: Node | None = None
        self.loss_value: engine.ReadHandle | None = None
        if is_training:
            self.target_output_layer = self.graph.placeholder(
                (self.batch_size, num_outputs), name="target"
            )
            loss = engine.mean(engine.square(output_layer - self.target_output_layer))
            loss.name = "loss"
            self.loss_value = engine.read(loss)
            engine.grad(loss, *self.trainable_parameters())

        self.machine = TapeMachine(
            self.graph, bind_dual_values=self.trainable_parameters()
        )

    def __repr__(self):
        mode = "training" if self.is_training else "inference"
        return f"FeedForwardModel({mode}, config={self.config})"

    def trainable_parameters(self) -> list[Node]:
        return [self.hidden_layer_weights, self.output_layer_weights]

    def weights(self) -> dict[str, np.ndarray]:
        return {node.name: node.value.copy() for node in self.trainable_parameters()}

    def _require_training(self, action: str):
        if self.target_output_layer is None:
            raise InvalidModeError(f"Cannot {action} with a model that was not created for training")

    def fit_batch(self, inputs, targets, solver: Solver) -> float:
        """
        Train on one batch: forward pass, backward pass, then one solver
        step on the weights. Returns the loss of the batch, before the step.
        """
        self._require_training("train")

        self.machine.reset()
        engine.let(self.input_layer, inputs)
        engine.let(self.target_output_layer, targets)
        self.machine.run_all()

        solver.step(engine.nodes_to_value_grads(self.trainable_parameters(), self.machine))
        return float(self.loss_value.get())

    def evaluate(self, inputs, targets) -> tuple[float, np.ndarray]:
        """Loss and outputs for a full batch, without touching the weights."""
        self._require_training("evaluate")

        self.machine.reset()
        engine.let(self.input_layer, inputs)
        engine.let(self.target_output_layer, targets)
        self.machine.run_all()
        return float(self.loss_value.get()), self.output_value.get().copy()

    def predict_single(self, sample) -> np.ndarray:
        if self.target_output_layer is not None:
            raise InvalidModeError("Cannot predict with a model that was created for training")

        # The graph expects a batch, so make the sample a batch of size 1.
        # np.array copies, so the caller's sample is left alone.
        sample = np.array(sample, dtype=np.float64)
        batch = sample.reshape((1,) + sample.shape)

        self.machine.reset()
        engine.let(self.input_layer, batch)
        self.machine.run_all()

        predicted = np.array(self.output_value.get())
        return predicted.reshape(predicted.shape[1:])

    def copy_weights_to_model(self, model: "FeedForwardModel") -> None:
        """Copy (not share) this model's weights into another model of the same size."""
        pairs = list(zip(self.trainable_parameters(), model.trainable_parameters()))
        for source, destination in pairs:
            if source.shape != destination.shape:
                raise ShapeMismatchError(
                    f"Cannot copy {source.name} of shape {source.shape} into shape {destination.shape}"
                )
        for source, destination in pairs:
            engine.let(destination, source.value)
