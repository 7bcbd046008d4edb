"""``histostack`` command line.

Usage::

    histostack init -M slices.txt [-ext nii.gz] PROJECT
    histostack recon [-z Z_RANGE Z_EPSILON] PROJECT
    histostack volmatch -i mri.nii.gz PROJECT
    histostack -N voliter [-R FIRST LAST] [-na 5] [-nd 5] [-w 4.0] PROJECT

Global options (``-N``, ``--config``, engine settings, ``-v``) go before
the command.
"""

import sys
import argparse
import logging
from typing import List, Optional

from histostack.cli.run_stage import build_config, run_stage
from histostack.contracts import ConfigurationError, ContractViolation, RegistrationEngineFailure

__all__ = ['build_parser', 'cli_overrides', 'main']

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="histostack",
        description="Histology stack reconstruction and alignment to a reference volume",
    )
    parser.add_argument("-N", "--reuse", action="store_true",
                        help="Reuse results already present in the project")
    parser.add_argument("--config", help="Path to user config file (Python file with CONFIG dict)")
    parser.add_argument("--metric", help="Registration metric (NCC, WNCC, SSD, MI, NMI)")
    parser.add_argument("--iterations", help="Multi-resolution iteration schedule, e.g. 100x50x10")
    parser.add_argument("--threads", type=int, help="Engine thread count")
    parser.add_argument("--seed", type=int, help="Seed for the refinement visiting order")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p_init = sub.add_parser("init", help="Create a project from a slice manifest")
    p_init.add_argument("-M", "--manifest", required=True,
                        help="Manifest file: '<id> <z> <path>' per line")
    p_init.add_argument("-ext", "--image-ext", dest="image_ext",
                        help="Extension for images written to the project")

    p_recon = sub.add_parser("recon", help="Reconstruct the stack from pairwise registrations")
    p_recon.add_argument("-z", "--z-range", dest="z_range", nargs=2, type=float,
                         metavar=("Z_RANGE", "Z_EPSILON"),
                         help="Neighbor distance threshold and z penalty")

    p_vm = sub.add_parser("volmatch", help="Initial alignment to the reference volume")
    p_vm.add_argument("-i", "--volume", required=True, help="Reference volume image")

    p_vi = sub.add_parser("voliter", help="Iterative refinement against the volume")
    p_vi.add_argument("-R", "--range", dest="iter_range", nargs=2, type=int,
                      metavar=("FIRST", "LAST"), help="Iterations to run (1-based, inclusive)")
    p_vi.add_argument("-na", "--n-affine", dest="n_affine", type=int, help="Affine iterations")
    p_vi.add_argument("-nd", "--n-deform", dest="n_deform", type=int, help="Deformable iterations")
    p_vi.add_argument("-w", "--w-volume", dest="w_volume", type=float,
                      help="Weight of the volume term relative to neighbors")

    for p in (p_init, p_recon, p_vm, p_vi):
        p.add_argument("project_dir", help="Project directory")
    return parser


def cli_overrides(args: argparse.Namespace) -> dict:
    """CLIConfig fields from parsed arguments (None where not given)."""
    z_range = getattr(args, "z_range", None) or (None, None)
    iter_range = getattr(args, "iter_range", None) or (None, None)
    return {
        "project_dir": args.project_dir,
        "reuse": True if args.reuse else None,
        "image_ext": getattr(args, "image_ext", None),
        "z_range": z_range[0],
        "z_epsilon": z_range[1],
        "n_affine": getattr(args, "n_affine", None),
        "n_deform": getattr(args, "n_deform", None),
        "w_volume": getattr(args, "w_volume", None),
        "i_first": iter_range[0],
        "i_last": iter_range[1],
        "seed": args.seed,
        "threads": args.threads,
        "metric": args.metric,
        "iterations": args.iterations,
        "log_level": "DEBUG" if args.verbose else None,
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = build_config(args.config, cli_overrides(args))
        run_stage(
            args.command,
            config,
            stage_args={
                "manifest": getattr(args, "manifest", None),
                "image_ext": getattr(args, "image_ext", None),
                "volume": getattr(args, "volume", None),
            },
            verbose=args.verbose,
        )
    except (ConfigurationError, ContractViolation, RegistrationEngineFailure,
            FileNotFoundError, ValueError) as err:
        logger.error("%s: %s", type(err).__name__, err)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted; completed checkpoints are kept")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
