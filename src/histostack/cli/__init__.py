"""Command-line interface modules for histostack stage execution.

This package contains core execution logic, making scripts/ optional and deletable.
"""

from histostack.cli.run_stage import run_stage, build_config, load_user_config_dict

__all__ = ['run_stage', 'build_config', 'load_user_config_dict']
