import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tootapp import config as config_module


class TestConfig(unittest.TestCase):
    def _write_config(self, tmpdir: str, data: dict) -> Path:
        config_dir = Path(tmpdir) / ".config" / "tootapp"
        config_dir.mkdir(parents=True, exist_ok=True)
        config_path = config_dir / "config.json"
        config_path.write_text(json.dumps(data))
        return config_path

    def test_set_setting_writes_private_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)):
                config_module.set_setting("TOOTAPP_IMPORT_STRATEGY", " Merge ")
                config_path = config_module.get_config_path()

                self.assertEqual(json.loads(config_path.read_text()), {"TOOTAPP_IMPORT_STRATEGY": "merge"})
                self.assertEqual(stat.S_IMODE(os.stat(config_path).st_mode), 0o600)

    def test_set_setting_rejects_unknown_keys_and_values(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)):
                with self.assertRaises(ValueError):
                    config_module.set_setting("X_API_KEY", "secret")
                with self.assertRaises(ValueError):
                    config_module.set_setting("TOOTAPP_IMPORT_STRATEGY", "overwrite")

    def test_environment_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self._write_config(tmpdir, {"TOOTAPP_DB_URL": "sqlite:///from-file.db"})
            with mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)):
                with mock.patch.dict(os.environ, {"TOOTAPP_DB_URL": "sqlite:///from-env.db"}):
                    self.assertEqual(config_module.get_db_url(), "sqlite:///from-env.db")
                with mock.patch.dict(os.environ, {}, clear=True):
                    self.assertEqual(config_module.get_db_url(), "sqlite:///from-file.db")

    def test_import_strategy_defaults_to_ask(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)):
                with mock.patch.dict(os.environ, {}, clear=True):
                    self.assertEqual(config_module.get_import_strategy(), "ask")
                    self._write_config(tmpdir, {"TOOTAPP_IMPORT_STRATEGY": "bogus"})
                    self.assertEqual(config_module.get_import_strategy(), "ask")

    def test_load_config_ignores_corrupt_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = self._write_config(tmpdir, {})
            config_path.write_text("{not json")
            with mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)):
                self.assertEqual(config_module.load_config(), {})

    def test_show_config_reports_sources(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self._write_config(tmpdir, {"TOOTAPP_IMPORT_STRATEGY": "replace"})
            with (
                mock.patch.object(config_module.Path, "home", return_value=Path(tmpdir)),
                mock.patch.dict(os.environ, {}, clear=True),
                mock.patch("builtins.print") as print_mock,
            ):
                config_module.show_config()

            lines = [call.args[0] for call in print_mock.call_args_list]
            self.assertIn("  TOOTAPP_IMPORT_STRATEGY: replace (from config file)", lines)
            self.assertIn("  TOOTAPP_DB_URL: Not set", lines)
