import os
import sys
import uuid
from pathlib import Path

import numpy as np
import pytest

from astromgr.core.config import default_config
from astromgr.core.population import create_population
from astromgr.core.scheduler import InstanceScheduler

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_DIR = TESTS_DIR.parent
FAKE_GAME = TESTS_DIR / "fake_game.py"
FAKE_AGENT = TESTS_DIR / "fake_agent.py"


def game_command(mode="finish", duration=0.3, score=10, level=1, elapsed=3):
    return [
        sys.executable,
        str(FAKE_GAME),
        "--mode", mode,
        "--duration", str(duration),
        "--score", str(score),
        "--level", str(level),
        "--elapsed", str(elapsed),
    ]


def agent_command():
    return [sys.executable, str(FAKE_AGENT)]


def scheduler_config(**overrides):
    options = {
        "max_parallel": 2,
        "max_iterations": 1,
        "tick_interval": 0.05,
        "exit_grace_period": 5.0,
        "game_command": game_command(),
        "agent_command": agent_command(),
        "seed": 7,
    }
    options.update(overrides)
    return default_config(**options)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def segment_name():
    return f"t{uuid.uuid4().hex[:16]}"


@pytest.fixture
def population_root(tmp_path, rng):
    root = tmp_path / "population"
    create_population(root, 4, [6], rng=rng)
    return root


@pytest.fixture
def child_env(monkeypatch):
    """Make the package importable from spawned fake children."""
    paths = [str(PROJECT_DIR)]
    if os.environ.get("PYTHONPATH"):
        paths.append(os.environ["PYTHONPATH"])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))


@pytest.fixture
def make_scheduler(child_env, population_root):
    created = []

    def factory(**overrides):
        scheduler = InstanceScheduler(scheduler_config(**overrides))
        scheduler.load_population(population_root)
        created.append(scheduler)
        return scheduler

    yield factory
    for scheduler in created:
        scheduler.close()
