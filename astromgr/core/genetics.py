"""Genetic operators over flat float32 parameter vectors.

All operators take an explicit ``numpy.random.Generator`` so that a run can be
reproduced from a seed. Invalid parameters never raise: generators and
crossover return ``None``, mutation leaves its input untouched. Callers must
check for ``None`` before using a result.
"""

# Builtin dependencies
from __future__ import annotations
from typing import Sequence

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core.model import FnnModel, count_biases, count_weights


def _rng(rng: np.random.Generator | None) -> np.random.Generator:
    return rng if rng is not None else np.random.default_rng()


def generate_weights(
    layer_neurons: Sequence[int],
    low: float,
    high: float,
    rng: np.random.Generator | None = None,
) -> np.ndarray | None:
    """Uniform random weights for every layer boundary.

    Args:
      layer_neurons: Neuron count per layer, input layer first.
      low: Inclusive lower bound.
      high: Upper bound.
      rng: Random generator.

    Returns:
      np.ndarray | None: float32 vector of ``sum(n[i] * n[i + 1])`` values,
      or ``None`` for fewer than 2 layers or ``low > high``.
    """
    if len(layer_neurons) < 2 or low > high:
        return None
    total = count_weights(layer_neurons)
    if total == 0:
        return None
    return _rng(rng).uniform(low, high, size=total).astype(np.float32)


def generate_biases(
    layer_neurons: Sequence[int],
    mean: float,
    stddev: float,
    rng: np.random.Generator | None = None,
) -> np.ndarray | None:
    """Normally distributed biases for every non-input neuron.

    Returns:
      np.ndarray | None: float32 vector of ``sum(n[1:])`` values, or ``None``
      for fewer than 2 layers or a negative `stddev`.
    """
    if len(layer_neurons) < 2 or stddev < 0:
        return None
    total = count_biases(layer_neurons)
    if total == 0:
        return None
    return _rng(rng).normal(mean, stddev, size=total).astype(np.float32)


def crossover(
    parent1: np.ndarray,
    parent2: np.ndarray,
    eta: float,
    rng: np.random.Generator | None = None,
) -> np.ndarray | None:
    """Simulated binary crossover (SBX) of two parameter vectors.

    For every element a spread factor is drawn from ``u ~ U(0, 1)``::

        beta = (2u) ** (1 / (eta + 1))                 if u <= 0.5
        beta = (1 / (2 (1 - u))) ** (1 / (eta + 1))    otherwise

    and one of the two SBX children is kept with equal probability::

        child1 = 0.5 [(1 + beta) x1 + (1 - beta) x2]
        child2 = 0.5 [(1 - beta) x1 + (1 + beta) x2]

    Larger `eta` keeps children closer to their parents. ``eta == 0`` uses
    ``beta = 1`` everywhere, i.e. each element is copied from one parent.

    Args:
      parent1: First parent vector.
      parent2: Second parent vector, same length.
      eta: Distribution index, ``>= 0``.
      rng: Random generator.

    Returns:
      np.ndarray | None: New float32 vector, or ``None`` if `eta` is
      negative, the lengths differ or the vectors are empty.
    """
    if parent1 is None or parent2 is None or eta < 0:
        return None
    x1 = np.asarray(parent1, dtype=np.float64)
    x2 = np.asarray(parent2, dtype=np.float64)
    if x1.shape != x2.shape or x1.size == 0:
        return None

    rng = _rng(rng)
    u = rng.random(x1.shape)
    if eta == 0:
        beta = np.ones_like(u)
    else:
        exponent = 1.0 / (eta + 1.0)
        beta = np.where(
            u <= 0.5,
            np.power(2.0 * u, exponent),
            np.power(1.0 / (2.0 * (1.0 - u)), exponent),
        )

    # same children as the textbook form, arranged so that x1 == x2 is exact
    mid = x1 + x2
    spread = beta * (x1 - x2)
    child1 = 0.5 * (mid + spread)
    child2 = 0.5 * (mid - spread)

    pick_first = rng.random(x1.shape) < 0.5
    return np.where(pick_first, child1, child2).astype(np.float32)


def mutate(
    values: np.ndarray,
    rate: float,
    stddev: float,
    rng: np.random.Generator | None = None,
):
    """Gaussian mutation, in place.

    Each element is, with probability `rate`, replaced by a sample of
    ``N(value, stddev)``.

    Does nothing if `rate` or `stddev` is negative or `values` is empty.
    """
    if values is None or rate < 0 or stddev < 0 or values.size == 0:
        return
    rng = _rng(rng)
    mask = rng.random(values.shape) < rate
    count = int(mask.sum())
    if count:
        values[mask] = rng.normal(values[mask], stddev, size=count)


def compatible(parent1: FnnModel | None, parent2: FnnModel | None) -> bool:
    """True if two models can be bred: same layer sizes and parameter counts."""
    if parent1 is None or parent2 is None:
        return False
    if parent1.weights is None or parent1.biases is None:
        return False
    if parent2.weights is None or parent2.biases is None:
        return False
    return (
        list(parent1.neuron_counts) == list(parent2.neuron_counts)
        and parent1.total_weights == parent2.total_weights
        and parent1.total_biases == parent2.total_biases
    )


def model_breed(
    parent1: FnnModel | None,
    parent2: FnnModel | None,
    eta: float,
    rate: float,
    stddev: float,
    rng: np.random.Generator | None = None,
) -> FnnModel | None:
    """Breed a child model from two parents.

    Weights and biases are crossed over (SBX) and then mutated independently;
    topology and activations are copied from `parent1`.

    Returns:
      FnnModel | None: The child, or ``None`` if the parents are not
      :func:`compatible` or crossover rejects the parameters.
    """
    if not compatible(parent1, parent2):
        return None
    assert parent1 is not None and parent2 is not None
    rng = _rng(rng)

    weights = crossover(parent1.weights, parent2.weights, eta, rng=rng)
    biases = crossover(parent1.biases, parent2.biases, eta, rng=rng)
    if weights is None or biases is None:
        return None
    mutate(weights, rate, stddev, rng=rng)
    mutate(biases, rate, stddev, rng=rng)

    return FnnModel(
        neuron_counts=list(parent1.neuron_counts),
        activations=list(parent1.activations),
        weights=weights,
        biases=biases,
    )


def roulette_select(
    fitness: Sequence[float],
    rng: np.random.Generator | None = None,
) -> int:
    """Fitness-proportionate selection of one index.

    Negative fitness counts as zero. When no candidate has positive fitness
    the choice is uniform.
    """
    weights = np.clip(np.asarray(fitness, dtype=np.float64), 0.0, None)
    if weights.size == 0:
        raise ValueError("cannot select from an empty population")
    rng = _rng(rng)
    total = weights.sum()
    if not np.isfinite(total) or total <= 0:
        return int(rng.integers(weights.size))
    return int(rng.choice(weights.size, p=weights / total))
