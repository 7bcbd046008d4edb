"""Configuration models for histostack.

Three layers feed one frozen result. ``ParamConfig`` carries every default,
``UserConfig`` takes the uppercase keys of a user ``CONFIG`` dict, and
``CLIConfig`` holds what a single command line asked for (project directory,
stage arguments, the reuse flag). ``resolve_config`` merges them, CLI over user
over defaults, and returns an ``InternalConfig`` that stages read but never
change.
"""

from histostack.schemas.resolve import resolve_config
from histostack.schemas.internal import InternalConfig
from histostack.schemas.param import ParamConfig
from histostack.schemas.user import UserConfig
from histostack.schemas.cli import CLIConfig

__all__ = [
    'resolve_config',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'CLIConfig',
]
