import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from tripboard.config_manager import ConfigManager
from tripboard.errors import ValidationError
from tripboard.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "conf" / "config.yaml"
            manager = ConfigManager(str(config_path))
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().conflicts.default_duration_minutes, 60)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "voting": {"binary_kinds": ["restaurant", "activity"]},
                    "notifications": {"webhook_url": "https://hooks.example.com/trip", "api_key": "k"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["voting"]["binary_kinds"], ["restaurant", "activity"])
            self.assertEqual(data["notifications"]["api_key"], "k")
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())

    def test_update_merges_and_masks_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"notifications": {"webhook_url": "https://hooks.example.com/a", "api_key": "secret"}})
            manager.update({"notifications": {"api_key": "***", "timeout_seconds": 5}})

            config = manager.load()
            self.assertEqual(config.notifications.api_key, "secret")
            self.assertEqual(config.notifications.webhook_url, "https://hooks.example.com/a")
            self.assertEqual(config.notifications.timeout_seconds, 5)
            self.assertEqual(manager.masked()["notifications"]["api_key"], "***")

    def test_update_rejects_bad_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with self.assertRaises(ValidationError):
                manager.update({"conflicts": {"default_duration_minutes": "soon"}})
            self.assertEqual(manager.load().conflicts.default_duration_minutes, 60)


if __name__ == "__main__":
    unittest.main()
