from abc import ABC, abstractmethod
from typing import Iterable

import numpy as np

from engine import ValueGrad


class Solver(ABC):
    """Updates parameter values in place, given their gradients."""

    def __init__(self, learn_rate: float):
        if learn_rate <= 0:
            raise ValueError(f"Learning rate must be positive, got {learn_rate}")
        self.learn_rate = learn_rate

    @abstractmethod
    def step(self, value_grads: Iterable[ValueGrad]) -> None:
        pass


class VanillaSolver(Solver):
    """Plain gradient descent."""

    def __init__(self, learn_rate: float = 0.001):
        super().__init__(learn_rate)

    def step(self, value_grads):
        for vg in value_grads:
            vg.value -= self.learn_rate * vg.grad


class AdamSolver(Solver):
    """
    Adam: gradient descent scaled by running estimates of the first and
    second moments of the gradients, with bias correction for the first
    few steps while the estimates are still close to zero.
    """

    def __init__(
        self,
        learn_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8,
    ):
        super().__init__(learn_rate)
        if not (0.0 <= beta1 < 1.0 and 0.0 <= beta2 < 1.0):
            raise ValueError(f"Betas must be in [0, 1), got {beta1}, {beta2}")
        if eps <= 0:
            raise ValueError(f"eps must be positive, got {eps}")
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        # Moment estimates and step counts, per parameter node.
        self.m: dict[str, np.ndarray] = {}
        self.v: dict[str, np.ndarray] = {}
        self.t: dict[str, int] = {}

    def step(self, value_grads):
        for vg in value_grads:
            key = vg.node.id
            if key not in self.m:
                self.m[key] = np.zeros_like(vg.value)
                self.v[key] = np.zeros_like(vg.value)
                self.t[key] = 0
            self.t[key] += 1
            t = self.t[key]

            self.m[key] = self.beta1 * self.m[key] + (1 - self.beta1) * vg.grad
            self.v[key] = self.beta2 * self.v[key] + (1 - self.beta2) * vg.grad**2
            m_hat = self.m[key] / (1 - self.beta1**t)
            v_hat = self.v[key] / (1 - self.beta2**t)

            vg.value -= self.learn_rate * m_hat / (np.sqrt(v_hat) + self.eps)
