import pytest

from nn import FeedForwardModel
from optimizers import VanillaSolver
from training import main, train, xor_dataset


def test_xor_dataset():
    features, labels = xor_dataset()
    assert features.shape == (4, 2)
    assert labels.shape == (4, 1)
    assert labels[:, 0].tolist() == [0.0, 1.0, 1.0, 0.0]


def test_train_returns_loss_per_epoch(capsys):
    features, labels = xor_dataset()
    model = FeedForwardModel(True, seed=0)
    losses = train(model, features, labels, VanillaSolver(learn_rate=0.5), epochs=6, log_every=3)

    assert len(losses) == 6
    assert all(loss >= 0.0 for loss in losses)
    out = capsys.readouterr().out
    assert "Epoch: 0, Loss:" in out
    assert "Epoch: 3, Loss:" in out
    assert "Epoch: 1, Loss:" not in out


def test_main_predicts_every_sample(capsys):
    assert main(["--epochs", "5", "--quiet", "--seed", "0"]) == 0
    out = capsys.readouterr().out
    assert "Epoch:" not in out
    assert "Final loss:" in out
    assert out.count("Predicted Output:") == 4


def test_main_simple(capsys):
    assert main(["--epochs", "5", "--quiet", "--seed", "0", "--simple", "--solver", "vanilla"]) == 0
    out = capsys.readouterr().out
    assert "Predictions:" in out
    assert out.count("YP:") == 4


def test_main_plot(tmp_path):
    path = tmp_path / "loss.png"
    assert main(["--epochs", "5", "--quiet", "--seed", "0", "--plot", str(path)]) == 0
    assert path.exists()


def test_seed_from_environment(monkeypatch, capsys):
    monkeypatch.setenv("XORNET_SEED", "7")
    main(["--epochs", "3", "--quiet"])
    first = capsys.readouterr().out
    main(["--epochs", "3", "--quiet"])
    second = capsys.readouterr().out
    assert first == second


def test_invalid_seed_from_environment(monkeypatch, capsys):
    monkeypatch.setenv("XORNET_SEED", "not-a-number")
    with pytest.raises(SystemExit) as excinfo:
        main(["--epochs", "1", "--quiet"])
    assert excinfo.value.code == 2
    assert "--seed" in capsys.readouterr().err


def test_invalid_hidden_size(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--epochs", "1", "--quiet", "--hidden", "0"])
    assert excinfo.value.code == 2
    assert "--hidden must be at least 1" in capsys.readouterr().err
