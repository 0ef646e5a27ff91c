"""Command-line front end of the manager.

Subcommands
-----------
``popcreate ROOT SIZE HIDDEN...``
    Write a random ``gen0`` under ``ROOT``.
``run ROOT``
    Load the latest generation of ``ROOT`` and evolve it in the foreground.
``shell``
    Interactive console; the scheduler runs in the background while the
    population is inspected and individual instances are killed or toggled.
"""

# Builtin dependencies
from __future__ import annotations
import argparse
import cmd
import logging
import shlex

# External dependencies
import numpy as np

# Local dependencies
from astromgr.core import population
from astromgr.core.config import default_config
from astromgr.core.errors import AstroError
from astromgr.core.registry import InstanceDescriptor
from astromgr.core.scheduler import InstanceScheduler

logger = logging.getLogger(__name__)

VERSION = "0.2.0"

# ----------------------------
# FORMATTING
# ----------------------------
def format_descriptor(d: InstanceDescriptor) -> str:
    return (
        f"{d.id:>4}  {d.status.name or 'INACTIVE':<9}  gen {d.generation:<4}  "
        f"game {d.game_pid:>7}  agent {d.agent_pid:>7}  fitness {d.fitness:>10.3f}  {d.model_path}"
    )


def format_summary(scheduler: InstanceScheduler) -> str:
    descriptors = scheduler.get_all()
    if not descriptors:
        return "no population loaded"
    counts: dict[str, int] = {}
    for d in descriptors:
        name = d.status.name or "INACTIVE"
        counts[name] = counts.get(name, 0) + 1
    lines = [
        f"population: {scheduler.population_dir}",
        f"generation: {descriptors[0].generation}  instances: {len(descriptors)}",
        f"running: {scheduler.is_running()}  iteration: {scheduler.iteration}  "
        f"game seed: {scheduler.game_seed}",
        "states: " + ", ".join(f"{name}={n}" for name, n in sorted(counts.items())),
    ]
    if scheduler.last_error is not None:
        lines.append(f"last error: {scheduler.last_error}")
    return "\n".join(lines)


# ----------------------------
# INTERACTIVE SHELL
# ----------------------------
class ManagerShell(cmd.Cmd):
    intro = f"astromgr {VERSION}. Type help or ? to list commands."
    prompt = "astromgr> "

    def __init__(self, scheduler: InstanceScheduler | None = None, **kwargs):
        super().__init__(**kwargs)
        self.scheduler = scheduler if scheduler is not None else InstanceScheduler()

    def _args(self, line: str, usage: str, count: int | None = None) -> list[str] | None:
        args = shlex.split(line)
        if count is not None and len(args) < count:
            self.stdout.write(f"usage: {usage}\n")
            return None
        return args

    def _instance_id(self, line: str, usage: str) -> int | None:
        args = self._args(line, usage, 1)
        if args is None:
            return None
        try:
            return int(args[0])
        except ValueError:
            self.stdout.write(f"usage: {usage}\n")
            return None

    def onecmd(self, line: str) -> bool:
        try:
            return super().onecmd(line)
        except AstroError as e:
            self.stdout.write(f"error: {e}\n")
            return False

    def emptyline(self) -> bool:
        return False

    def default(self, line: str):
        self.stdout.write(f"unknown command: {line.split()[0]}\n")

    def do_version(self, line):
        """version: print the manager version"""
        self.stdout.write(f"astromgr {VERSION}\n")

    def do_popcreate(self, line):
        """popcreate ROOT SIZE HIDDEN...: write a random gen0 under ROOT"""
        usage = "popcreate ROOT SIZE HIDDEN..."
        args = self._args(line, usage, 3)
        if args is None:
            return
        try:
            size = int(args[1])
            hidden = [int(n) for n in args[2:]]
        except ValueError:
            self.stdout.write(f"usage: {usage}\n")
            return
        paths = population.create_population(args[0], size, hidden)
        self.stdout.write(f"created {len(paths)} models in {paths[0].parent}\n")

    def do_popload(self, line):
        """popload ROOT: load the latest generation of a population"""
        args = self._args(line, "popload ROOT", 1)
        if args is None:
            return
        count = self.scheduler.load_population(args[0])
        self.stdout.write(f"loaded {count} instances\n")

    def do_genrun(self, line):
        """genrun PARALLEL ITERATIONS [EPOCH [ELITISM]]: evolve in the background"""
        usage = "genrun PARALLEL ITERATIONS [EPOCH [ELITISM]]"
        args = self._args(line, usage, 2)
        if args is None:
            return
        try:
            values = [int(a) for a in args[:4]]
        except ValueError:
            self.stdout.write(f"usage: {usage}\n")
            return
        keys = ["max_parallel", "max_iterations", "epoch_size", "elitism_count"]
        self.scheduler.configure(**dict(zip(keys, values)))
        self.scheduler.start()
        self.stdout.write("run started\n")

    def do_genstop(self, line):
        """genstop: stop the run, terminating every live instance"""
        if self.scheduler.stop_population():
            self.stdout.write("run stopped\n")
        else:
            self.stdout.write("no run in progress\n")

    def do_genstat(self, line):
        """genstat: summary of the loaded generation"""
        self.stdout.write(format_summary(self.scheduler) + "\n")

    def do_inststat(self, line):
        """inststat [ID]: status of one instance, or of all"""
        args = shlex.split(line)
        if args:
            instance_id = self._instance_id(line, "inststat [ID]")
            if instance_id is None:
                return
            d = self.scheduler.get(instance_id)
            if d is None:
                self.stdout.write(f"no instance {instance_id}\n")
                return
            descriptors = [d]
        else:
            descriptors = self.scheduler.get_all()
        for d in descriptors:
            self.stdout.write(format_descriptor(d) + "\n")

    def do_instkill(self, line):
        """instkill ID: terminate a running instance"""
        instance_id = self._instance_id(line, "instkill ID")
        if instance_id is None:
            return
        if not self.scheduler.kill_individual(instance_id):
            self.stdout.write(f"instance {instance_id} is not running\n")

    def do_insthead(self, line):
        """insthead ID: toggle headless rendering of a running instance"""
        instance_id = self._instance_id(line, "insthead ID")
        if instance_id is None:
            return
        if not self.scheduler.toggle_headless(instance_id):
            self.stdout.write(f"instance {instance_id} is not running\n")

    def do_clear(self, line):
        """clear: clear the screen"""
        self.stdout.write("\033[2J\033[H")

    def do_exit(self, line) -> bool:
        """exit: stop any run and leave"""
        self.scheduler.close()
        return True

    do_EOF = do_exit


# ----------------------------
# ENTRY POINT
# ----------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="astromgr", description="Neuro-evolution instance manager")
    parser.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("popcreate", help="create a random initial population")
    create.add_argument("root", help="population directory")
    create.add_argument("size", type=int, help="number of models")
    create.add_argument("hidden", type=int, nargs="+", help="hidden layer sizes")
    create.add_argument("--seed", type=int, help="random seed")
    create.add_argument("--overwrite", action="store_true", help="replace an existing population")

    run = sub.add_parser("run", help="evolve a population in the foreground")
    run.add_argument("root", help="population directory")
    run.add_argument("--max-parallel", type=int, default=1)
    run.add_argument("--max-iterations", type=int, default=1)
    run.add_argument("--epoch-size", type=int, default=0, help="reseed the game every N iterations (0: never)")
    run.add_argument("--elitism", type=int, default=0, help="models copied unchanged to the next generation")
    run.add_argument("--exclude-elites", action="store_true", help="do not draw parents from the elites")
    run.add_argument("--tick", type=float, help="seconds between scheduler passes")
    run.add_argument("--autokill", type=float, help="kill instances whose score stalls this many seconds")
    run.add_argument("--game", help="game command (split like a shell)")
    run.add_argument("--agent", help="agent command (split like a shell)")
    run.add_argument("--seed", type=int, help="random seed")

    sub.add_parser("shell", help="interactive console")
    return parser


def config_from_args(args: argparse.Namespace):
    overrides = {
        "max_parallel": args.max_parallel,
        "max_iterations": args.max_iterations,
        "epoch_size": args.epoch_size,
        "elitism_count": args.elitism,
        "include_elites_in_selection": not args.exclude_elites,
        "seed": args.seed,
    }
    if args.tick is not None:
        overrides["tick_interval"] = args.tick
    if args.autokill is not None:
        overrides["autokill_timeout"] = args.autokill
    if args.game:
        overrides["game_command"] = shlex.split(args.game)
    if args.agent:
        overrides["agent_command"] = shlex.split(args.agent)
    return default_config(**overrides)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    try:
        if args.command == "popcreate":
            rng = np.random.default_rng(args.seed)
            paths = population.create_population(args.root, args.size, args.hidden, rng=rng, overwrite=args.overwrite)
            print(f"created {len(paths)} models in {paths[0].parent}")
            return 0

        if args.command == "run":
            scheduler = InstanceScheduler(config_from_args(args))
            count = scheduler.load_population(args.root)
            print(f"loaded {count} instances from {args.root}")
            try:
                scheduler.run()
            except KeyboardInterrupt:
                print("interrupted")
            finally:
                print(format_summary(scheduler))
                scheduler.close()
            return 1 if scheduler.last_error is not None else 0

        ManagerShell().cmdloop()
        return 0
    except AstroError as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"An error occurred: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
