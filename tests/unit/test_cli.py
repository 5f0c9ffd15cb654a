"""
Unit tests for the dropshare command line configuration flags.

Created by orpheus497
"""

import os

import pytest

from dropshare.__main__ import main
from dropshare.config import DEFAULT_CONFIG, Config


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in list(os.environ):
        if name.startswith("DROPSHARE_"):
            monkeypatch.delenv(name)


class TestConfigFlags:
    """Test --init-config and --save-config."""

    def test_init_config_writes_example(self, temp_dir):
        path = temp_dir / "config.toml"

        assert main(["--init-config", "--config", str(path)]) == 0
        assert Config(path).to_dict() == DEFAULT_CONFIG

    def test_init_config_keeps_existing_file(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[transfer]\nchunk_size = 1024\n")

        assert main(["--init-config", "--config", str(path)]) == 2
        assert path.read_text() == "[transfer]\nchunk_size = 1024\n"

    def test_save_config_records_mutual_flag(self, temp_dir):
        path = temp_dir / "config.toml"

        assert main(["--mutual", "--save-config", "--config", str(path)]) == 0
        assert Config(path).get("security", "mutual_authentication") is True

    def test_invalid_config_exits_with_2(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[transfer]\nchunk_delay = -1\n")

        assert main(["--save-config", "--config", str(path)]) == 2

    def test_file_is_required_to_run(self, temp_dir):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(temp_dir / "config.toml")])
        assert exc_info.value.code == 2
