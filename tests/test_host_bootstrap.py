import subprocess
import unittest
from unittest import mock

import host_bootstrap


class EnsureToolsTests(unittest.TestCase):
    def tearDown(self) -> None:
        host_bootstrap.set_bootstrap_enabled(True)

    def test_present_tools_need_no_installation(self) -> None:
        with mock.patch("host_bootstrap.shutil.which", return_value="/usr/bin/tool"), mock.patch(
            "host_bootstrap.install_packages"
        ) as install_mock:
            host_bootstrap.ensure_tools(["tar", "bzip2"])

        install_mock.assert_not_called()

    def test_missing_tool_reported_with_hint_when_bootstrap_disabled(self) -> None:
        host_bootstrap.set_bootstrap_enabled(False)
        with mock.patch("host_bootstrap.shutil.which", return_value=None), mock.patch(
            "host_bootstrap.install_packages"
        ) as install_mock, self.assertRaises(host_bootstrap.MissingToolError) as ctx:
            host_bootstrap.ensure_tool("dpkg-deb")

        install_mock.assert_not_called()
        self.assertIn("'dpkg-deb'", str(ctx.exception))
        self.assertIn("sudo dnf install dpkg", str(ctx.exception))

    def test_missing_tools_installed_via_dnf(self) -> None:
        installed: set[str] = set()

        def which(command: str) -> str | None:
            if command == "dnf" or command in installed:
                return f"/usr/bin/{command}"
            return None

        def install(packages, *, logger=None) -> None:
            installed.update({"dpkg-deb", "exportfs"})

        with mock.patch("host_bootstrap.shutil.which", side_effect=which), mock.patch(
            "host_bootstrap.install_packages", side_effect=install
        ) as install_mock:
            host_bootstrap.ensure_tools(["dpkg-deb", "exportfs"])

        install_mock.assert_called_once()
        self.assertEqual(["dpkg", "nfs-utils"], install_mock.call_args.args[0])

    def test_failed_installation_still_reports_missing_tool(self) -> None:
        def which(command: str) -> str | None:
            return "/usr/bin/dnf" if command == "dnf" else None

        error = subprocess.CalledProcessError(1, ["dnf", "install"])
        with mock.patch("host_bootstrap.shutil.which", side_effect=which), mock.patch(
            "host_bootstrap.install_packages", side_effect=error
        ), self.assertLogs(host_bootstrap.LOG, level="WARNING") as logs:
            with self.assertRaises(host_bootstrap.MissingToolError):
                host_bootstrap.ensure_tool("exportfs")

        self.assertIn("exit code 1", "\n".join(logs.output))

    def test_non_fedora_host_is_pointed_at_fedora(self) -> None:
        with mock.patch("host_bootstrap.shutil.which", return_value=None), self.assertRaises(
            host_bootstrap.MissingToolError
        ) as ctx:
            host_bootstrap.ensure_tool("dnf")

        self.assertIn("Fedora", str(ctx.exception))


class InstallPackagesTests(unittest.TestCase):
    def test_root_runs_dnf_directly(self) -> None:
        with mock.patch("host_bootstrap.os.geteuid", return_value=0), mock.patch(
            "host_bootstrap.subprocess.run"
        ) as run_mock:
            host_bootstrap.install_packages(["dpkg"])

        run_mock.assert_called_once_with(["dnf", "install", "-y", "dpkg"], check=True)

    def test_unprivileged_without_sudo_raises_permission_error(self) -> None:
        with mock.patch("host_bootstrap.os.geteuid", return_value=1000), mock.patch(
            "host_bootstrap.shutil.which", return_value=None
        ), self.assertRaises(PermissionError):
            host_bootstrap.install_packages(["dpkg"])


class PickContainerRuntimeTests(unittest.TestCase):
    def test_podman_preferred(self) -> None:
        with mock.patch("host_bootstrap.shutil.which", side_effect=lambda command: f"/usr/bin/{command}"):
            self.assertEqual("podman", host_bootstrap.pick_container_runtime())

    def test_docker_used_when_podman_missing(self) -> None:
        with mock.patch(
            "host_bootstrap.shutil.which",
            side_effect=lambda command: "/usr/bin/docker" if command == "docker" else None,
        ):
            self.assertEqual("docker", host_bootstrap.pick_container_runtime())

    def test_no_runtime(self) -> None:
        with mock.patch("host_bootstrap.shutil.which", return_value=None):
            self.assertIsNone(host_bootstrap.pick_container_runtime())


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
