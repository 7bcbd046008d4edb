"""Core stage execution logic.

This module contains the stage runner, separated from argument parsing.
``histostack.cli.main`` is a thin wrapper; this is the real implementation.
"""

import json
import logging
import importlib.util
from pathlib import Path
from typing import Optional, Dict, Any

from pydantic import ValidationError

from histostack.contracts import ConfigurationError
from histostack.pipeline.orchestrator import StackOrchestrator
from histostack.schemas import resolve_config, ParamConfig, UserConfig, CLIConfig
from histostack.schemas.internal import InternalConfig

__all__ = ['load_user_config_dict', 'build_config', 'run_stage', 'STAGES']

logger = logging.getLogger(__name__)

STAGES = ('init', 'recon', 'volmatch', 'voliter')


def load_user_config_dict(config_path: str) -> dict:
    """Load user config dict from Python file.

    Returns the raw dict before Pydantic validation.

    Parameters
    ----------
    config_path : str
        Path to user config Python file containing CONFIG dict.

    Raises
    ------
    FileNotFoundError
        If config file does not exist.
    ValueError
        If no CONFIG dict found in file.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    spec = importlib.util.spec_from_file_location("config_module", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    # Find CONFIG dict
    for name in dir(module):
        if name.startswith('CONFIG'):
            obj = getattr(module, name)
            if isinstance(obj, dict):
                return obj

    raise ValueError(f"No CONFIG dict found in {path}")


def build_config(user_config_path: Optional[str] = None,
                 cli_args: Optional[Dict[str, Any]] = None) -> InternalConfig:
    """Resolve Param < User < CLI configuration.

    Raises
    ------
    ConfigurationError
        If any layer fails validation (unknown keys, bad values).
    """
    try:
        param_cfg = ParamConfig()
        user_cfg = None
        if user_config_path:
            user_cfg = UserConfig.model_validate(load_user_config_dict(user_config_path))

        cli_dict = {k: v for k, v in (cli_args or {}).items() if v is not None}
        cli_cfg = CLIConfig.model_validate(cli_dict) if cli_dict else CLIConfig()

        return resolve_config(param_cfg, user_cfg, cli_cfg)
    except ValidationError as err:
        raise ConfigurationError(f"Invalid configuration:\n{err}") from err


def run_stage(stage: str, config: InternalConfig,
              stage_args: Optional[Dict[str, Any]] = None,
              verbose: bool = False, orchestrator_cls=StackOrchestrator):
    """Execute one pipeline stage.

    Parameters
    ----------
    stage : str
        One of ``init``, ``recon``, ``volmatch``, ``voliter``.
    config : InternalConfig
    stage_args : dict, optional
        ``manifest`` and ``image_ext`` for init, ``volume`` for volmatch.
    verbose : bool, optional
        Print the full resolved configuration.

    Raises
    ------
    ConfigurationError
        If the stage is unknown or its arguments are missing.
    """
    stage_args = stage_args or {}
    if stage not in STAGES:
        raise ConfigurationError(f"Unknown stage '{stage}'. Must be one of {list(STAGES)}")

    print(f"\n{'='*60}")
    print("histostack")
    print('='*60)
    print(f"Stage:   {stage}")
    print(f"Project: {config.project_dir}")
    print(f"Reuse:   {config.project.reuse}")
    print('='*60)

    if verbose:
        print("\nFull Internal Configuration:")
        print(json.dumps(config.model_dump(), indent=2))
        print('='*60)

    orchestrator = orchestrator_cls(config)
    if stage == 'init':
        if not stage_args.get('manifest'):
            raise ConfigurationError("init requires a manifest (-M)")
        return orchestrator.init_project(stage_args['manifest'], stage_args.get('image_ext'))
    if stage == 'recon':
        return orchestrator.reconstruct()
    if stage == 'volmatch':
        if not stage_args.get('volume'):
            raise ConfigurationError("volmatch requires a reference volume (-i)")
        return orchestrator.match_to_volume(stage_args['volume'])
    return orchestrator.iterate()
