"""Feedforward neural network model files (``.fnnm``).

Binary layout (little-endian, no padding)::

    u32  magic            0x4D4E4E46 ("FNNM" on disk)
    u16  version          0x0002
    u64  total weights    sum(n[i] * n[i + 1])
    u64  total biases     sum(n[i]) for every non-input layer
    u32  layer count      >= 2
    u32  neuron count     x layer count
    u32  activation code  x (layer count - 1)
    f32  weights          x total weights
    f32  biases           x total biases

Weights are stored layer after layer, each layer as a row-major
``(n[i], n[i + 1])`` matrix so that ``x @ W + b`` maps layer ``i`` onto
layer ``i + 1``.

A file either loads completely or raises :class:`ModelFormatError`; callers
never see a partially valid model. Writes go through a temporary file in the
destination directory, so a failed write leaves nothing behind.
"""

# Builtin dependencies
from __future__ import annotations
import enum
import os
import struct
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core.errors import ModelFormatError

MODEL_MAGIC = 0x4D4E4E46
MODEL_VERSION = 0x0002
MODEL_SUFFIX = ".fnnm"

_HEADER = struct.Struct("<IHQQI")


class Activation(enum.IntEnum):
    NONE = 0
    SIGMOID = 1
    RELU = 2
    TANH = 3
    SOFTMAX = 4


def count_weights(neuron_counts: Sequence[int]) -> int:
    return sum(a * b for a, b in zip(neuron_counts[:-1], neuron_counts[1:]))


def count_biases(neuron_counts: Sequence[int]) -> int:
    return sum(neuron_counts[1:])


@dataclass
class FnnModel:
    """Topology plus flat parameter vectors of one network."""

    neuron_counts: list[int]
    activations: list[Activation]
    weights: np.ndarray | None = field(default=None, repr=False)
    biases: np.ndarray | None = field(default=None, repr=False)

    @property
    def layer_count(self) -> int:
        return len(self.neuron_counts)

    @property
    def total_weights(self) -> int:
        return 0 if self.weights is None else int(self.weights.size)

    @property
    def total_biases(self) -> int:
        return 0 if self.biases is None else int(self.biases.size)

    def layers(self):
        """Yield ``(weight_matrix, bias_vector, activation)`` per layer."""
        assert self.weights is not None and self.biases is not None
        w_offset = b_offset = 0
        for i, activation in enumerate(self.activations):
            n_in, n_out = self.neuron_counts[i], self.neuron_counts[i + 1]
            w = self.weights[w_offset : w_offset + n_in * n_out].reshape(n_in, n_out)
            b = self.biases[b_offset : b_offset + n_out]
            w_offset += n_in * n_out
            b_offset += n_out
            yield w, b, activation

    def validate(self):
        """Check that the parameter vectors match the topology.

        Raises:
          ModelFormatError: On any inconsistency.
        """
        if self.layer_count < 2:
            raise ModelFormatError("a model needs at least 2 layers")
        if any(n <= 0 for n in self.neuron_counts):
            raise ModelFormatError("layer sizes must be positive")
        if len(self.activations) != self.layer_count - 1:
            raise ModelFormatError("expected one activation per non-input layer")
        if self.weights is None or self.biases is None:
            raise ModelFormatError("model has no parameters")
        if self.total_weights != count_weights(self.neuron_counts):
            raise ModelFormatError(
                f"weight count {self.total_weights} does not match topology {self.neuron_counts}"
            )
        if self.total_biases != count_biases(self.neuron_counts):
            raise ModelFormatError(
                f"bias count {self.total_biases} does not match topology {self.neuron_counts}"
            )


def serialize(path: str | os.PathLike, model: FnnModel):
    """Write `model` to `path` in ``.fnnm`` format.

    Raises:
      ModelFormatError: If the model is inconsistent.
      OSError: If the file cannot be written; no partial file is left.
    """
    model.validate()
    assert model.weights is not None and model.biases is not None

    header = _HEADER.pack(
        MODEL_MAGIC,
        MODEL_VERSION,
        model.total_weights,
        model.total_biases,
        model.layer_count,
    )
    payload = b"".join(
        [
            header,
            np.asarray(model.neuron_counts, dtype="<u4").tobytes(),
            np.asarray([int(a) for a in model.activations], dtype="<u4").tobytes(),
            np.asarray(model.weights, dtype="<f4").tobytes(),
            np.asarray(model.biases, dtype="<f4").tobytes(),
        ]
    )

    path = Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


def deserialize(path: str | os.PathLike) -> FnnModel:
    """Read a model from `path`.

    Raises:
      ModelFormatError: If the file is truncated, oversized, has a bad magic
        or version, fewer than 2 layers or counts inconsistent with its
        topology.
      OSError: If the file cannot be read.
    """
    with open(path, "rb") as f:
        data = f.read()

    if len(data) < _HEADER.size:
        raise ModelFormatError(f"{path}: truncated header")
    magic, version, total_weights, total_biases, layer_count = _HEADER.unpack_from(data)
    if magic != MODEL_MAGIC or version != MODEL_VERSION:
        raise ModelFormatError(f"{path}: bad magic/version {magic:#x}/{version:#x}")
    if layer_count < 2:
        raise ModelFormatError(f"{path}: invalid layer count {layer_count}")

    expected = _HEADER.size + 4 * layer_count + 4 * (layer_count - 1) + 4 * (total_weights + total_biases)
    if len(data) != expected:
        raise ModelFormatError(f"{path}: expected {expected} bytes, found {len(data)}")

    offset = _HEADER.size
    neuron_counts = np.frombuffer(data, dtype="<u4", count=layer_count, offset=offset)
    offset += 4 * layer_count
    codes = np.frombuffer(data, dtype="<u4", count=layer_count - 1, offset=offset)
    offset += 4 * (layer_count - 1)
    weights = np.frombuffer(data, dtype="<f4", count=total_weights, offset=offset)
    offset += 4 * total_weights
    biases = np.frombuffer(data, dtype="<f4", count=total_biases, offset=offset)

    try:
        activations = [Activation(int(c)) for c in codes]
    except ValueError as e:
        raise ModelFormatError(f"{path}: {e}") from e

    model = FnnModel(
        neuron_counts=[int(n) for n in neuron_counts],
        activations=activations,
        weights=weights.astype(np.float32),
        biases=biases.astype(np.float32),
    )
    try:
        model.validate()
    except ModelFormatError as e:
        raise ModelFormatError(f"{path}: {e}") from e
    return model


def generate_model(
    layer_sizes: Sequence[int],
    activations: Sequence[Activation],
    weight_range: tuple[float, float] = (-1.0, 1.0),
    bias_mean: float = 0.0,
    bias_stddev: float = 1.0,
    rng: np.random.Generator | None = None,
) -> FnnModel:
    """Create a randomly initialized model.

    Weights are uniform over `weight_range`; biases are normal with the given
    mean and standard deviation.

    Raises:
      ModelFormatError: If the topology or the distribution parameters are
        invalid.
    """
    from astromgr.core.genetics import generate_biases, generate_weights

    rng = rng if rng is not None else np.random.default_rng()
    weights = generate_weights(layer_sizes, *weight_range, rng=rng)
    biases = generate_biases(layer_sizes, bias_mean, bias_stddev, rng=rng)
    if weights is None or biases is None:
        raise ModelFormatError(f"cannot generate parameters for topology {list(layer_sizes)}")

    model = FnnModel(
        neuron_counts=[int(n) for n in layer_sizes],
        activations=[Activation(a) for a in activations],
        weights=weights,
        biases=biases,
    )
    model.validate()
    return model
