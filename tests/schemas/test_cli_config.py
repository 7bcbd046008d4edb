import pytest
from pydantic import ValidationError

from histostack.schemas.cli import CLIConfig
from histostack.schemas.user import UserConfig
from histostack.schemas.param import ParamConfig
from histostack.schemas.resolve import resolve_config

pytestmark = pytest.mark.unit


def test_cli_overrides_do_not_mutate_user():
    user = UserConfig.model_validate({"Z_RANGE": 1.0, "PROJECT_DIR": "/tmp/a"})
    cli = CLIConfig.model_validate({"z_range": 3.0})

    internal = resolve_config(ParamConfig(), user, cli)

    assert internal.recon.z_range == 3.0
    assert user.z_range == 1.0


def test_iteration_range_requires_both_ends():
    with pytest.raises(ValidationError, match="both first and last"):
        CLIConfig(i_first=1)


def test_iteration_range_overrides():
    config = resolve_config(ParamConfig(), None, CLIConfig(i_first=2, i_last=4))

    assert config.voliter.i_first == 2
    assert config.voliter.i_last == 4


def test_empty_cli_has_no_overrides():
    assert CLIConfig().to_internal_overrides() == {}


def test_cli_engine_overrides():
    cli = CLIConfig(threads=8, metric="ssd", iterations="40x20", log_level="DEBUG")
    config = resolve_config(ParamConfig(), None, cli)

    assert config.engine.threads == 8
    assert config.engine.metric == "SSD"
    assert config.engine.iterations == "40x20"
    assert config.logging.level == "DEBUG"


def test_cli_rejects_unknown_field():
    with pytest.raises(ValidationError):
        CLIConfig.model_validate({"legacy_mode": "old"})
