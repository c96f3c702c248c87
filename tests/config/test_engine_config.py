"""
Engine configuration loading.

Tests cover:
- The bundled default set
- $STOCK_ENGINE_CONFIG and explicit path resolution
- Unknown sections/keys and wrongly typed values are rejected
- Transfer numbering follows the configured prefix and width
"""

import pytest
import yaml

from stock_config import CONFIG_ENV_VAR, get_active_config
from stock_config.loader import parse_engine_config
from stock_config.schema import EngineConfig, TransferConfig
from stock_kernel.domain.transfer import NewTransfer, TransferItemRequest
from stock_kernel.services.transfer_service import TransferService


@pytest.fixture
def write_config(tmp_path):
    def _write(data, name="engine.yaml"):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
        return path

    return _write


class TestResolution:
    def test_bundled_default(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        config = get_active_config()
        assert config.transfers == TransferConfig()
        assert config.database.lock_timeout_seconds == 5.0
        assert config.logging.level == "INFO"

    def test_env_var(self, monkeypatch, write_config):
        path = write_config({"transfers": {"number_prefix": "XFER"}})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert get_active_config().transfers.number_prefix == "XFER"

    def test_explicit_path_wins(self, monkeypatch, write_config):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(write_config({}, "env.yaml")))
        path = write_config({"logging": {"level": "DEBUG"}}, "explicit.yaml")
        assert get_active_config(path).logging.level == "DEBUG"

    def test_empty_file_gives_defaults(self, write_config):
        assert get_active_config(write_config("")) == EngineConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_logged(self, write_config, captured_logs):
        get_active_config(write_config({}))
        (record,) = [r for r in captured_logs() if r["message"] == "config_loaded"]
        assert record["number_prefix"] == "TRF"


class TestValidation:
    def test_unknown_section(self):
        with pytest.raises(ValueError, match="sections"):
            parse_engine_config({"metrics": {}})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown keys"):
            parse_engine_config({"database": {"host": "db"}})

    @pytest.mark.parametrize(
        "section, values",
        [
            ("database", {"echo": "yes"}),
            ("database", {"pool_size": 2.5}),
            ("database", {"lock_timeout_seconds": True}),
            ("transfers", {"number_prefix": 7}),
        ],
    )
    def test_wrong_types(self, section, values):
        with pytest.raises(ValueError):
            parse_engine_config({section: values})

    def test_int_accepted_for_float(self):
        config = parse_engine_config({"database": {"pool_timeout_seconds": 3}})
        assert config.database.pool_timeout_seconds == 3.0

    def test_page_size_bounds(self):
        with pytest.raises(ValueError):
            TransferConfig(default_page_size=500, max_page_size=100)

    def test_top_level_must_be_mapping(self, write_config):
        with pytest.raises(ValueError):
            get_active_config(write_config("- a\n- b\n"))


class TestNumbering:
    def test_prefix_and_width(self, world, run, directory):
        config = TransferConfig(number_prefix="MV", number_width=6)
        request = NewTransfer(
            source_branch_id=world.source,
            destination_branch_id=world.destination,
            items=(TransferItemRequest(world.widget, 1),),
        )
        transfer = run(
            lambda uow: TransferService(uow, directory, config).create_transfer(
                world.source_user, request,
            )
        )
        assert transfer.transfer_number == "MV-2025-000001"
