"""Reference agent process: drives one game instance with a ``.fnnm`` model.

The agent is started by the scheduler as::

    astromgr-agent -m <input> <output> <status> -l <model.fnnm>

It maps the three segments of its instance, loads the model into a torch
module and then, until the manager asks it to stop,

  1) reads the game sensors from the Output segment,
  2) runs one forward pass,
  3) thresholds the four outputs at ``0.5`` into forward/left/right/fire and
     writes them to the Input segment.

The agent stops when ``Status.agent_exit`` is set, when
``Status.manager_alive`` drops, or on SIGTERM. ``Status.agent_alive`` is held
high for as long as the loop runs.
"""

# Builtin dependencies
from __future__ import annotations
import argparse
import logging
import signal
import sys
import time

# External dependencies
import numpy as np
import torch
from torch import nn

# Local dependencies
from astromgr.core.errors import ModelFormatError, SegmentError
from astromgr.core.model import Activation, FnnModel, deserialize
from astromgr.core.segments import InputSegment, OutputSegment, OutputState, Role, StatusSegment

logger = logging.getLogger(__name__)

ACTION_THRESHOLD = 0.5
POLL_INTERVAL = 1 / 60  # one decision per rendered frame


class Softmax1d(nn.Softmax):
    def __init__(self):
        super().__init__(dim=-1)


_ACTIVATIONS: dict[Activation, type[nn.Module]] = {
    Activation.NONE: nn.Identity,
    Activation.SIGMOID: nn.Sigmoid,
    Activation.RELU: nn.ReLU,
    Activation.TANH: nn.Tanh,
    Activation.SOFTMAX: Softmax1d,
}


class FnnPolicy(nn.Module):
    """Feedforward network rebuilt from a :class:`FnnModel`.

    Layer ``i`` computes ``act(x @ W_i + b_i)`` where ``W_i`` is the
    ``(n_in, n_out)`` row-major block of the flat weight vector. ``nn.Linear``
    stores ``(n_out, n_in)``, hence the transpose when loading.
    """

    def __init__(self, model: FnnModel):
        super().__init__()
        model.validate()
        layers: list[nn.Module] = []
        for w, b, activation in model.layers():
            linear = nn.Linear(w.shape[0], w.shape[1])
            with torch.no_grad():
                linear.weight.copy_(torch.from_numpy(np.ascontiguousarray(w.T)))
                linear.bias.copy_(torch.from_numpy(np.asarray(b)))
            layers.append(linear)
            layers.append(_ACTIVATIONS[Activation(activation)]())
        self.net = nn.Sequential(*layers)
        self.input_size = model.neuron_counts[0]
        self.output_size = model.neuron_counts[-1]

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.net(x)


def sensor_tensor(state: OutputState, size: int, device=None) -> torch.Tensor:
    """Pack the Output segment snapshot into a model input vector.

    Missing inputs are zero-padded and surplus sensors are dropped, so models
    with a different input layer still run.
    """
    values = [
        state.rotation,
        state.velocity_x,
        state.velocity_y,
        state.obstacle_distance,
        state.obstacle_bearing,
    ]
    values = (values + [0.0] * size)[:size]
    return torch.tensor(values, dtype=torch.float32, device=device)


@torch.no_grad()
def decide(policy: FnnPolicy, state: OutputState, device=None) -> dict[str, bool]:
    """One forward pass, thresholded into the four control bits."""
    outputs = policy(sensor_tensor(state, policy.input_size, device=device))
    bits = (outputs > ACTION_THRESHOLD).tolist()
    bits = (bits + [False] * 4)[:4]
    return {"forward": bits[0], "left": bits[1], "right": bits[2], "fire": bits[3]}


def run_agent(
    input_name: str,
    output_name: str,
    status_name: str,
    model_path: str,
    poll_interval: float = POLL_INTERVAL,
) -> int:
    """Run the control loop until told to stop.

    Returns:
      int: Process exit code, ``0`` on an orderly stop.
    """
    try:
        policy = FnnPolicy(deserialize(model_path)).eval()
    except (ModelFormatError, OSError) as e:
        logger.error("cannot load model %s: %s", model_path, e)
        return 1

    try:
        controls = InputSegment.connect(input_name, Role.AGENT)
        sensors = OutputSegment.connect(output_name, Role.AGENT)
        status = StatusSegment.connect(status_name, Role.AGENT)
    except SegmentError as e:
        logger.error("%s", e)
        return 1

    status.write(agent_alive=True)
    logger.info("agent running %s", model_path)
    try:
        while True:
            state = status.read()
            if state.agent_exit or not state.manager_alive:
                break
            if not state.is_paused:
                controls.write(**decide(policy, sensors.read()))
            time.sleep(poll_interval)
    finally:
        status.write(agent_alive=False)
        for segment in (controls, sensors, status):
            segment.disconnect()
    logger.info("agent stopped")
    return 0


def _terminate(signum, frame):
    sys.exit(0)


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Neural-network agent for one game instance")
    parser.add_argument(
        "-m",
        "--memory",
        nargs=3,
        metavar=("INPUT", "OUTPUT", "STATUS"),
        required=True,
        help="shared memory segment names",
    )
    parser.add_argument("-l", "--load", required=True, metavar="MODEL", help="model file to evaluate")
    parser.add_argument("--poll-interval", type=float, default=POLL_INTERVAL)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")
    signal.signal(signal.SIGTERM, _terminate)

    input_name, output_name, status_name = args.memory
    sys.exit(run_agent(input_name, output_name, status_name, args.load, args.poll_interval))


if __name__ == "__main__":
    main()
