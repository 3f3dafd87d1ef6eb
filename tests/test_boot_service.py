import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import boot_service
import power_modes


class InstallBootServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.rootfs = Path(self._tempdir.name) / "rootfs"
        self.rootfs.mkdir()

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_helper_is_the_power_mode_script(self) -> None:
        installed = boot_service.install_boot_service(self.rootfs)

        self.assertEqual(self.rootfs / "usr/local/sbin/jetson-super-setup", installed.helper)
        self.assertEqual(Path(power_modes.__file__).read_text(), installed.helper.read_text())
        self.assertTrue(installed.helper.read_text().startswith("#!/usr/bin/env python3"))
        self.assertEqual(0o755, stat.S_IMODE(installed.helper.stat().st_mode))

    def test_unit_runs_helper_once_for_multi_user_target(self) -> None:
        installed = boot_service.install_boot_service(self.rootfs)

        unit_text = installed.unit.read_text()
        self.assertEqual(self.rootfs / "etc/systemd/system/jetson-super-setup.service", installed.unit)
        self.assertIn("Type=oneshot", unit_text)
        self.assertIn("ExecStart=/usr/local/sbin/jetson-super-setup", unit_text)
        self.assertIn("After=network-online.target", unit_text)
        self.assertIn("WantedBy=multi-user.target", unit_text)
        self.assertTrue(unit_text.startswith("[Unit]"))

    def test_service_is_enabled_through_wants_symlink(self) -> None:
        installed = boot_service.install_boot_service(self.rootfs)

        link = self.rootfs / "etc/systemd/system/multi-user.target.wants/jetson-super-setup.service"
        self.assertEqual(link, installed.wants_link)
        self.assertTrue(link.is_symlink())
        self.assertEqual("/etc/systemd/system/jetson-super-setup.service", os.readlink(link))

    def test_reinstall_replaces_existing_files(self) -> None:
        boot_service.install_boot_service(self.rootfs)
        installed = boot_service.install_boot_service(self.rootfs)

        self.assertTrue(installed.wants_link.is_symlink())
        self.assertEqual(boot_service.render_unit(), installed.unit.read_text())

    def test_missing_rootfs_raises(self) -> None:
        with self.assertRaises(FileNotFoundError):
            boot_service.install_boot_service(self.rootfs / "missing")


class BootServiceMainTests(unittest.TestCase):
    def test_main_installs_into_given_rootfs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir, mock.patch("boot_service.logging.basicConfig"):
            exit_code = boot_service.main([tmp_dir])
            helper_exists = (Path(tmp_dir) / boot_service.HELPER_PATH).exists()

        self.assertEqual(0, exit_code)
        self.assertTrue(helper_exists)

    def test_main_reports_missing_rootfs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir, mock.patch(
            "boot_service.logging.basicConfig"
        ), mock.patch("sys.stderr"):
            exit_code = boot_service.main([str(Path(tmp_dir) / "missing")])

        self.assertEqual(1, exit_code)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
