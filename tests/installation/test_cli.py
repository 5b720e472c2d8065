"""
Tests for the command-line entry point: argument handling, exit codes and
stage-named error messages.
"""

import json
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import OperationalError

from cellar import cli
from cellar.errors import IntegrityError, NotFoundError
from cellar.schemas.manifest import InstalledPackage


def package(version="0.1", active=True, pinned=False):
    return InstalledPackage(
        name="pomodoromac",
        version=version,
        prefix_path=Path(f"/cellar/Cellar/pomodoromac/{version}"),
        wrappers={"pomodoromac": "pomodoro_for_mac.app/Contents/MacOS/pomodoro_for_mac"},
        active=active,
        pinned=pinned,
    )


class TestCli(unittest.TestCase):

    def setUp(self):
        self.installer = MagicMock()

    def test_no_command_shows_help(self):
        with patch("sys.stdout"):
            self.assertEqual(cli.main([], installer=self.installer), 1)

    @patch("cellar.cli.FormulaRepository")
    def test_install_uses_parallel_fetch(self, mock_repo):
        manifest = MagicMock()
        mock_repo.return_value.load.return_value = manifest
        self.installer.install_many.return_value = [package()]

        with patch("builtins.print"):
            code = cli.main(["install", "pomodoromac"], installer=self.installer)

        self.assertEqual(code, 0)
        mock_repo.return_value.load.assert_called_once_with("pomodoromac")
        self.installer.install_many.assert_called_once_with([manifest])

    @patch("cellar.cli.FormulaRepository")
    def test_install_with_pin(self, mock_repo):
        manifest = MagicMock()
        mock_repo.return_value.load.return_value = manifest
        self.installer.install_formula.return_value = package(pinned=True)

        with patch("builtins.print"):
            code = cli.main(["install", "pomodoromac", "--pin"], installer=self.installer)

        self.assertEqual(code, 0)
        self.installer.install_formula.assert_called_once_with(manifest, pin=True)

    @patch("cellar.cli.FormulaRepository")
    def test_failure_exits_non_zero_and_names_stage(self, mock_repo):
        mock_repo.return_value.load.return_value = MagicMock()
        self.installer.install_many.side_effect = IntegrityError("SHA-256 mismatch")

        with patch("builtins.print") as mock_print:
            code = cli.main(["install", "pomodoromac"], installer=self.installer)

        self.assertEqual(code, 1)
        message = mock_print.call_args[0][0]
        self.assertIn("verify failed: SHA-256 mismatch", message)

    def test_uninstall_single_version(self):
        with patch("builtins.print"):
            code = cli.main(["uninstall", "pomodoromac", "--version", "0.1"], installer=self.installer)
        self.assertEqual(code, 0)
        self.installer.uninstall.assert_called_once_with("pomodoromac", "0.1")

    def test_uninstall_all_versions(self):
        self.installer.uninstall_all.return_value = ["0.1", "0.2"]
        with patch("builtins.print"):
            code = cli.main(["uninstall", "pomodoromac"], installer=self.installer)
        self.assertEqual(code, 0)
        self.installer.uninstall_all.assert_called_once_with("pomodoromac")

    def test_uninstall_unknown_package(self):
        self.installer.uninstall_all.side_effect = NotFoundError("pomodoromac is not installed")
        with patch("builtins.print") as mock_print:
            code = cli.main(["uninstall", "pomodoromac"], installer=self.installer)
        self.assertEqual(code, 1)
        self.assertIn("uninstall failed", mock_print.call_args[0][0])

    def test_registry_error_names_command(self):
        self.installer.list_installed.side_effect = OperationalError(
            "SELECT * FROM installed_packages", {}, Exception("database is locked")
        )

        with patch("builtins.print") as mock_print:
            code = cli.main(["list"], installer=self.installer)

        self.assertEqual(code, 1)
        message = mock_print.call_args[0][0]
        self.assertIn("list failed:", message)
        self.assertIn("database is locked", message)

    def test_filesystem_error_names_command(self):
        self.installer.unpin.side_effect = PermissionError(13, "Permission denied")

        with patch("builtins.print") as mock_print:
            code = cli.main(["unpin", "pomodoromac"], installer=self.installer)

        self.assertEqual(code, 1)
        self.assertIn("unpin failed:", mock_print.call_args[0][0])

    def test_list_json(self):
        self.installer.list_installed.return_value = [package("0.1", active=False), package("0.2")]

        with patch("builtins.print") as mock_print:
            code = cli.main(["list", "--format", "json"], installer=self.installer)

        self.assertEqual(code, 0)
        data = json.loads(mock_print.call_args[0][0])
        self.assertEqual([d["version"] for d in data], ["0.1", "0.2"])
        self.assertEqual([d["active"] for d in data], [False, True])
        self.assertEqual(data[1]["wrappers"], ["pomodoromac"])

    def test_switch_pin_unpin(self):
        self.installer.activate.return_value = package("0.2")
        self.installer.pin.return_value = package("0.2", pinned=True)

        with patch("builtins.print"):
            self.assertEqual(cli.main(["switch", "pomodoromac", "0.2"], installer=self.installer), 0)
            self.assertEqual(cli.main(["pin", "pomodoromac", "0.2"], installer=self.installer), 0)
            self.assertEqual(cli.main(["unpin", "pomodoromac"], installer=self.installer), 0)

        self.installer.activate.assert_called_once_with("pomodoromac", "0.2")
        self.installer.pin.assert_called_once_with("pomodoromac", "0.2")
        self.installer.unpin.assert_called_once_with("pomodoromac")


if __name__ == "__main__":
    unittest.main()
