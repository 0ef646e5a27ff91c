"""Manager configuration: fixed training constants and the scheduler config.

Everything the scheduler needs for one run is collected in a
:class:`SchedulerConfig` (a ``TypedDict``), built with :func:`default_config`
and overridden from the command line. The module-level constants are the
defaults a run starts from.
"""

# Builtin dependencies
from __future__ import annotations
import sys
from typing import TypedDict


# ----------------------------
# FITNESS
# ----------------------------
FITNESS_WEIGHT_SCORE = 0.5
FITNESS_WEIGHT_TIME = 0.2
FITNESS_WEIGHT_LEVEL = 0.3

# ----------------------------
# BREEDING
# ----------------------------
BREED_CROSSOVER_INDEX = 2.0
BREED_MUTATION_RATE = 0.1
BREED_MUTATION_STDDEV = 0.1
BREED_MAX_ATTEMPTS = 8  # parent re-selections per slot before giving up

# ----------------------------
# INITIAL POPULATION
# ----------------------------
INPUT_LAYER_SIZE = 5   # normalized game sensors (see OutputSegment)
OUTPUT_LAYER_SIZE = 4  # forward, left, right, fire
WEIGHT_RANGE = (-1.0, 1.0)
BIAS_MEAN = 0.0
BIAS_STDDEV = 1.0

# ----------------------------
# SCHEDULING
# ----------------------------
TICK_INTERVAL = 1.0      # seconds between scheduler passes
EXIT_GRACE_PERIOD = 5.0  # seconds a child gets to honour its exit flag
AUTOKILL_TIMEOUT = 0.0   # seconds without score change before a kill (0 disables)

GAME_COMMAND = ["./bin/game"]
AGENT_COMMAND = [sys.executable, "-m", "astromgr.agent"]

REPORT_FILE_NAME = "report.csv"


class SchedulerConfig(TypedDict):
    max_parallel: int
    max_iterations: int
    epoch_size: int
    elitism_count: int
    include_elites_in_selection: bool
    tick_interval: float
    exit_grace_period: float
    autokill_timeout: float
    game_command: list[str]
    agent_command: list[str]
    crossover_index: float
    mutation_rate: float
    mutation_stddev: float
    fitness_weights: tuple[float, float, float]
    seed: int | None


def default_config(**overrides) -> SchedulerConfig:
    """Build a scheduler configuration from the module defaults.

    Args:
      **overrides: Any :class:`SchedulerConfig` key to replace.

    Returns:
      SchedulerConfig: A fresh dict, safe for the caller to mutate.

    Raises:
      KeyError: If an override names an unknown key.
    """
    config: SchedulerConfig = {
        "max_parallel": 1,
        "max_iterations": 1,
        "epoch_size": 0,
        "elitism_count": 0,
        "include_elites_in_selection": True,
        "tick_interval": TICK_INTERVAL,
        "exit_grace_period": EXIT_GRACE_PERIOD,
        "autokill_timeout": AUTOKILL_TIMEOUT,
        "game_command": list(GAME_COMMAND),
        "agent_command": list(AGENT_COMMAND),
        "crossover_index": BREED_CROSSOVER_INDEX,
        "mutation_rate": BREED_MUTATION_RATE,
        "mutation_stddev": BREED_MUTATION_STDDEV,
        "fitness_weights": (FITNESS_WEIGHT_SCORE, FITNESS_WEIGHT_TIME, FITNESS_WEIGHT_LEVEL),
        "seed": None,
    }
    for key, value in overrides.items():
        if key not in config:
            raise KeyError(f"unknown scheduler option: {key}")
        config[key] = value

    # counts below their minimum are clamped, not rejected
    config["max_parallel"] = max(1, int(config["max_parallel"]))
    config["max_iterations"] = max(1, int(config["max_iterations"]))
    config["epoch_size"] = max(0, int(config["epoch_size"]))
    config["elitism_count"] = max(0, int(config["elitism_count"]))
    return config
