import numpy as np

import pytest
from hypothesis import given, strategies as st, settings

from engine import ExecutionError
from nn import FeedForwardModel, InvalidModeError, ModelConfig, ShapeMismatchError
from optimizers import AdamSolver
from training import xor_dataset


@pytest.fixture(scope="module")
def trained_models():
    features, labels = xor_dataset()
    training_model = FeedForwardModel(True, seed=0)
    solver = AdamSolver(learn_rate=0.05)
    losses = [training_model.fit_batch(features, labels, solver) for _ in range(1000)]
    return training_model, losses


@settings(max_examples=20, deadline=None)
@given(
    num_inputs=st.integers(min_value=1, max_value=6),
    num_hidden=st.integers(min_value=1, max_value=8),
    num_outputs=st.integers(min_value=1, max_value=4),
    batch_size=st.integers(min_value=1, max_value=8),
    is_training=st.booleans(),
)
def test_weight_shapes(num_inputs, num_hidden, num_outputs, batch_size, is_training):
    config = ModelConfig(
        num_inputs=num_inputs,
        num_hidden=num_hidden,
        num_outputs=num_outputs,
        training_batch_size=batch_size,
    )
    model = FeedForwardModel(is_training, config)

    assert model.hidden_layer_weights.value.shape == (num_inputs + 1, num_hidden)
    assert model.output_layer_weights.value.shape == (num_hidden + 1, num_outputs)
    assert model.input_layer.shape == (batch_size if is_training else 1, num_inputs)


def test_training_only_fields():
    training_model = FeedForwardModel(True)
    testing_model = FeedForwardModel(False)

    assert training_model.batch_size == 4
    assert training_model.target_output_layer.shape == (4, 1)
    assert training_model.loss_value is not None

    assert testing_model.batch_size == 1
    assert testing_model.target_output_layer is None
    assert testing_model.loss_value is None


def test_invalid_config():
    with pytest.raises(ValueError):
        ModelConfig(num_hidden=0)
    with pytest.raises(ValueError):
        ModelConfig(inference_batch_size=3)


def test_xor_loss_decreases(trained_models):
    _, losses = trained_models
    assert losses[-1] < 0.05
    assert losses[-1] < losses[0]


def test_predict_xor_after_copy(trained_models):
    training_model, _ = trained_models
    testing_model = FeedForwardModel(False, seed=1)
    training_model.copy_weights_to_model(testing_model)

    features, labels = xor_dataset()
    for sample, label in zip(features, labels):
        predicted = testing_model.predict_single(sample)
        assert predicted.shape == (1,)
        assert abs(predicted[0] - label[0]) < 0.3


def test_evaluate_matches_predictions(trained_models):
    training_model, _ = trained_models
    features, labels = xor_dataset()
    before = training_model.weights()

    loss, outputs = training_model.evaluate(features, labels)

    assert outputs.shape == (4, 1)
    assert pytest.approx(loss) == float(np.mean((outputs - labels) ** 2))
    for name, value in training_model.weights().items():
        np.testing.assert_array_equal(value, before[name])


def test_fit_batch_on_inference_model():
    features, labels = xor_dataset()
    model = FeedForwardModel(False)
    with pytest.raises(InvalidModeError):
        model.fit_batch(features, labels, AdamSolver())
    with pytest.raises(InvalidModeError):
        model.evaluate(features, labels)


def test_predict_single_on_training_model():
    model = FeedForwardModel(True)
    with pytest.raises(InvalidModeError):
        model.predict_single(np.array([0.0, 1.0]))


def test_fit_batch_with_wrong_batch_size():
    features, labels = xor_dataset()
    model = FeedForwardModel(True, seed=0)
    with pytest.raises(ExecutionError):
        model.fit_batch(features[:3], labels[:3], AdamSolver())


def test_copy_weights_is_a_value_copy():
    features, labels = xor_dataset()
    source = FeedForwardModel(True, seed=0)
    destination = FeedForwardModel(False, seed=1)

    source.copy_weights_to_model(destination)
    copied = destination.weights()
    for name, value in source.weights().items():
        np.testing.assert_array_equal(copied[name], value)

    solver = AdamSolver(learn_rate=0.05)
    for _ in range(10):
        source.fit_batch(features, labels, solver)

    for name, value in destination.weights().items():
        np.testing.assert_array_equal(value, copied[name])
    assert not np.array_equal(
        source.hidden_layer_weights.value, destination.hidden_layer_weights.value
    )


def test_copy_weights_shape_mismatch():
    source = FeedForwardModel(True, seed=0)
    destination = FeedForwardModel(False, ModelConfig(num_hidden=3), seed=1)
    before = destination.weights()

    with pytest.raises(ShapeMismatchError):
        source.copy_weights_to_model(destination)

    for name, value in destination.weights().items():
        np.testing.assert_array_equal(value, before[name])


def test_predict_single_does_not_mutate_input():
    model = FeedForwardModel(False, seed=0)
    sample = np.array([1.0, 0.0])
    model.predict_single(sample)
    assert sample.shape == (2,)
    np.testing.assert_array_equal(sample, [1.0, 0.0])


def test_predict_single_accepts_lists():
    model = FeedForwardModel(False, seed=0)
    predicted = model.predict_single([0, 1])
    assert predicted.shape == (1,)
    assert 0.0 < predicted[0] < 1.0


def test_same_seed_same_weights():
    a = FeedForwardModel(True, seed=3).weights()
    b = FeedForwardModel(False, seed=3).weights()
    for name in a:
        np.testing.assert_array_equal(a[name], b[name])


def test_predict_single_with_wrong_sample_length():
    model = FeedForwardModel(False, seed=0)
    with pytest.raises(ExecutionError):
        model.predict_single([0.0, 1.0, 1.0])
