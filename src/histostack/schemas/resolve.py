"""Merging of the configuration layers into one ``InternalConfig``.

Later layers win: command line over user file over defaults. Nested
sections (``recon``, ``voliter``, ``engine``, ...) merge key by key, so a user
who sets only ``Z_RANGE`` keeps the default ``z_epsilon``.
"""

from typing import Optional, Union
from histostack.schemas.param import ParamConfig
from histostack.schemas.user import UserConfig
from histostack.schemas.cli import CLIConfig
from histostack.schemas.internal import InternalConfig


def deep_merge(base: dict, *overrides: dict) -> dict:
    """Merge section dicts, recursing into nested dicts.

    >>> deep_merge({"recon": {"z_range": 0.0, "z_epsilon": 0.1}},
    ...            {"recon": {"z_range": 2.0}})
    {'recon': {'z_range': 2.0, 'z_epsilon': 0.1}}
    """
    result = base.copy()

    for override in overrides:
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = value

    return result


def _coerce(value, model):
    if value is None or (isinstance(value, dict) and not value):
        return model()
    if isinstance(value, model):
        return value
    return model.model_validate(value)


def resolve_config(
    param_cfg: Union[dict, ParamConfig],
    user_cfg: Optional[Union[dict, UserConfig]] = None,
    cli_cfg: Optional[Union[dict, CLIConfig]] = None,
) -> InternalConfig:
    """Build the runtime configuration for one histostack run.

    The merged dict goes through ``ParamConfig`` validation a second time so
    that user and command-line values get the same bounds checks as the
    defaults (a negative ``Z_RANGE`` fails here, not halfway through recon).

    Parameters
    ----------
    param_cfg : dict or ParamConfig
        Defaults. Required.
    user_cfg : dict or UserConfig, optional
        Contents of a user ``CONFIG`` dict.
    cli_cfg : dict or CLIConfig, optional
        Command-line overrides.

    Returns
    -------
    InternalConfig

    Raises
    ------
    pydantic.ValidationError
        If any layer, or the merged result, is invalid.

    Examples
    --------
    >>> from histostack.schemas import resolve_config, ParamConfig, UserConfig
    >>> config = resolve_config(ParamConfig(), UserConfig(Z_RANGE=2))
    >>> config.recon.z_range
    2.0
    """
    if not isinstance(param_cfg, ParamConfig):
        param = ParamConfig.model_validate(param_cfg)
    else:
        param = param_cfg

    user = _coerce(user_cfg, UserConfig)
    cli = _coerce(cli_cfg, CLIConfig)

    merged = deep_merge(
        param.model_dump(),
        user.to_internal_overrides(),
        cli.to_internal_overrides(),
    )

    validated = ParamConfig.model_validate(merged)
    return InternalConfig.model_validate(validated.model_dump())
