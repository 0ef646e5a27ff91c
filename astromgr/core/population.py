"""Population directories, generation reports and breeding of the next generation.

Layout::

    <root>/
        report.csv
        gen0/model_0.fnnm ... model_{P-1}.fnnm
        gen1/...

The active generation is the ``genN`` directory with the highest ``N``.
"""

# Builtin dependencies
from __future__ import annotations
import csv
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Sequence

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core import config as cfg
from astromgr.core.errors import GenerationError, ModelFormatError, PopulationError
from astromgr.core.genetics import model_breed, roulette_select
from astromgr.core.model import MODEL_SUFFIX, Activation, deserialize, generate_model, serialize
from astromgr.core.registry import InstanceDescriptor

logger = logging.getLogger(__name__)

REPORT_COLUMNS = ["instanceID", "exitStatus", "modelPath", "generationID", "gameSeed", "fitness"]

_GEN_PATTERN = re.compile(r"gen(\d+)")
_MODEL_PATTERN = re.compile(r"model_(\d+)" + re.escape(MODEL_SUFFIX))


def generation_dir(root: str | os.PathLike, generation: int) -> Path:
    return Path(root) / f"gen{generation}"


def model_path(gen_dir: str | os.PathLike, index: int) -> Path:
    return Path(gen_dir) / f"model_{index}{MODEL_SUFFIX}"


def find_latest_generation(root: str | os.PathLike) -> int:
    """Highest ``N`` among the ``genN`` subdirectories of `root` (0 if none).

    Raises:
      PopulationError: If `root` is not a readable directory.
    """
    root = Path(root)
    if not root.is_dir():
        raise PopulationError(f"population directory {root} does not exist")
    latest = 0
    for entry in root.iterdir():
        match = _GEN_PATTERN.fullmatch(entry.name)
        if match and entry.is_dir():
            latest = max(latest, int(match.group(1)))
    return latest


def list_models(gen_dir: str | os.PathLike) -> list[Path]:
    """Model files of a generation directory, ordered by their index."""
    found = []
    for entry in Path(gen_dir).iterdir():
        match = _MODEL_PATTERN.fullmatch(entry.name)
        if match and entry.is_file():
            found.append((int(match.group(1)), entry))
    return [path for _, path in sorted(found)]


def load_population(root: str | os.PathLike) -> tuple[int, list[Path]]:
    """Locate the latest generation of `root` and its loadable models.

    Models that fail to deserialize are skipped with a warning.

    Returns:
      tuple[int, list[Path]]: The generation number and model paths.

    Raises:
      PopulationError: If the directory is missing or no model loads.
    """
    generation = find_latest_generation(root)
    gen_dir = generation_dir(root, generation)
    if not gen_dir.is_dir():
        raise PopulationError(f"{gen_dir} does not exist")

    models = []
    for path in list_models(gen_dir):
        try:
            deserialize(path)
        except (ModelFormatError, OSError) as e:
            logger.warning("skipping model %s: %s", path, e)
            continue
        models.append(path)

    if not models:
        raise PopulationError(f"no loadable models in {gen_dir}")
    logger.info("loaded generation %d of %s (%d models)", generation, root, len(models))
    return generation, models


def create_population(
    root: str | os.PathLike,
    size: int,
    hidden_layers: Sequence[int],
    rng: np.random.Generator | None = None,
    overwrite: bool = False,
) -> list[Path]:
    """Create ``<root>/gen0`` with `size` randomly initialized models.

    Topology is ``INPUT_LAYER_SIZE -> hidden_layers... -> OUTPUT_LAYER_SIZE``
    with ReLU hidden layers and a sigmoid output layer.

    Args:
      root: Population directory (created if missing).
      size: Number of models, ``>= 1``.
      hidden_layers: Sizes of the hidden layers, at least one.
      rng: Random generator.
      overwrite: Remove an existing `root` first.

    Raises:
      PopulationError: For invalid arguments or an existing population when
        `overwrite` is False.
    """
    if size < 1:
        raise PopulationError("population size cannot be zero")
    if not hidden_layers:
        raise PopulationError("at least one hidden layer is required")
    if any(n < 1 for n in hidden_layers):
        raise PopulationError("layer size cannot be zero")

    root = Path(root)
    if root.exists():
        if not overwrite:
            raise PopulationError(f"{root} already exists")
        shutil.rmtree(root)

    gen_dir = generation_dir(root, 0)
    gen_dir.mkdir(parents=True)

    layer_sizes = [cfg.INPUT_LAYER_SIZE, *hidden_layers, cfg.OUTPUT_LAYER_SIZE]
    activations = [Activation.RELU] * len(hidden_layers) + [Activation.SIGMOID]
    rng = rng if rng is not None else np.random.default_rng()

    paths = []
    for i in range(size):
        model = generate_model(
            layer_sizes,
            activations,
            weight_range=cfg.WEIGHT_RANGE,
            bias_mean=cfg.BIAS_MEAN,
            bias_stddev=cfg.BIAS_STDDEV,
            rng=rng,
        )
        path = model_path(gen_dir, i)
        serialize(path, model)
        paths.append(path)
        logger.debug("%d/%d models generated", i + 1, size)
    return paths


def write_report(root: str | os.PathLike, descriptors: Sequence[InstanceDescriptor]):
    """Append one row per descriptor to ``<root>/report.csv``.

    The header is written when the file is created.

    Raises:
      GenerationError: If the report cannot be written.
    """
    path = Path(root) / cfg.REPORT_FILE_NAME
    try:
        new_file = not path.exists()
        with open(path, "a", newline="") as f:
            writer = csv.writer(f)
            if new_file:
                writer.writerow(REPORT_COLUMNS)
            for d in descriptors:
                writer.writerow(
                    [d.id, d.status.name, d.model_path, d.generation, d.game_seed, f"{d.fitness:f}"]
                )
    except OSError as e:
        raise GenerationError(f"cannot write report {path}: {e}") from e


def read_report(root: str | os.PathLike) -> list[dict[str, str]]:
    with open(Path(root) / cfg.REPORT_FILE_NAME, newline="") as f:
        return list(csv.DictReader(f))


def next_generation(
    root: str | os.PathLike,
    descriptors: Sequence[InstanceDescriptor],
    elitism_count: int,
    eta: float = cfg.BREED_CROSSOVER_INDEX,
    mutation_rate: float = cfg.BREED_MUTATION_RATE,
    mutation_stddev: float = cfg.BREED_MUTATION_STDDEV,
    include_elites_in_selection: bool = True,
    rng: np.random.Generator | None = None,
) -> Path:
    """Write generation ``N + 1`` from the evaluated generation ``N``.

    Descriptors are ranked by fitness (descending). The top `elitism_count`
    model files are copied byte for byte to ``model_0 ...``; every other slot
    gets a child of two roulette-wheel parents bred with
    :func:`~astromgr.core.genetics.model_breed`. A slot whose parents cannot
    be loaded or bred is retried with new parents up to
    ``BREED_MAX_ATTEMPTS`` times.

    The generation is assembled in a hidden ``.genN.tmp`` directory and renamed
    into place once every slot is written, so a failed call leaves no
    ``genN`` behind.

    Args:
      root: Population directory.
      descriptors: Evaluated descriptors of generation ``N``.
      elitism_count: Elites to keep, clamped to ``len(descriptors) - 1``.
      eta: SBX distribution index.
      mutation_rate: Per-element mutation probability.
      mutation_stddev: Mutation standard deviation.
      include_elites_in_selection: Whether elites may also be drawn as
        parents.
      rng: Random generator.

    Returns:
      Path: The new generation directory.

    Raises:
      GenerationError: If the directory cannot be written or a slot cannot
        be filled.
    """
    if not descriptors:
        raise GenerationError("no descriptors to breed from")
    rng = rng if rng is not None else np.random.default_rng()

    size = len(descriptors)
    elitism_count = min(max(0, elitism_count), size - 1)
    ranked = sorted(descriptors, key=lambda d: d.fitness, reverse=True)
    generation = ranked[0].generation + 1
    gen_dir = generation_dir(root, generation)
    staging = Path(root) / f".{gen_dir.name}.tmp"

    try:
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)

        for i in range(elitism_count):
            shutil.copyfile(ranked[i].model_path, model_path(staging, i))

        pool = ranked if include_elites_in_selection or elitism_count == 0 else ranked[elitism_count:]
        fitness = [d.fitness for d in pool]
        cache = {}

        def load(d: InstanceDescriptor):
            if d.model_path not in cache:
                try:
                    cache[d.model_path] = deserialize(d.model_path)
                except (ModelFormatError, OSError) as e:
                    logger.warning("cannot load parent %s: %s", d.model_path, e)
                    cache[d.model_path] = None
            return cache[d.model_path]

        for i in range(elitism_count, size):
            child = None
            for _ in range(cfg.BREED_MAX_ATTEMPTS):
                parent1 = load(pool[roulette_select(fitness, rng)])
                parent2 = load(pool[roulette_select(fitness, rng)])
                child = model_breed(parent1, parent2, eta, mutation_rate, mutation_stddev, rng=rng)
                if child is not None:
                    break
            if child is None:
                raise GenerationError(f"cannot breed model {i} of generation {generation}")
            serialize(model_path(staging, i), child)

        if gen_dir.exists():
            shutil.rmtree(gen_dir)
        staging.rename(gen_dir)
    except OSError as e:
        raise GenerationError(f"cannot write generation {gen_dir}: {e}") from e
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.info("generation %d written to %s (%d elites)", generation, gen_dir, elitism_count)
    return gen_dir
