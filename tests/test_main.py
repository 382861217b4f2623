"""Tests for container_network.main - CLI configuration and daemon lifecycle"""
import threading
import unittest
from unittest.mock import Mock, patch

from click.testing import CliRunner
from docker.errors import APIError, DockerException
from requests.exceptions import ConnectionError as RequestsConnectionError

from container_network.config import Config, detect_default_socket, runtime_base_url
from container_network.main import cli, run, run_script


class TestCli(unittest.TestCase):
    @patch("container_network.main.setup_logging")
    @patch("container_network.main.run", return_value=0)
    def test_flags_override_env(self, mock_run, _):
        result = CliRunner().invoke(
            cli,
            ["--watch-network", "flagnet", "--iptables-mangle-mark-published-ports", "0x2", "--dry-run"],
            env={"WATCH_NETWORK": "envnet", "RUNTIME_API": "/tmp/docker.sock", "WATCH_CONTAINER_LABEL": "rp.enable"},
        )

        self.assertEqual(result.exit_code, 0, result.output)
        cfg = mock_run.call_args[0][0]
        self.assertEqual(cfg.watch_network, "flagnet")
        self.assertEqual(cfg.runtime_api, "/tmp/docker.sock")
        self.assertEqual(cfg.watch_container_label, "rp.enable")
        self.assertEqual(cfg.iptables_mangle_mark_published_ports, "0x2")
        self.assertEqual(cfg.iptables_dnat_ports_label, "network.dnat.ports")
        self.assertTrue(cfg.dry_run)

    @patch("container_network.main.setup_logging")
    @patch("container_network.main.run", return_value=1)
    def test_exit_status_propagates(self, mock_run, _):
        result = CliRunner().invoke(cli, ["--runtime-api", "/tmp/docker.sock"])

        self.assertEqual(result.exit_code, 1)

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("container-network", result.output)


class TestConfig(unittest.TestCase):
    def test_base_url(self):
        self.assertEqual(runtime_base_url("/var/run/docker.sock"), "unix:///var/run/docker.sock")
        self.assertEqual(runtime_base_url("unix:///run/podman/podman.sock"), "unix:///run/podman/podman.sock")
        self.assertEqual(runtime_base_url("tcp://127.0.0.1:2375"), "tcp://127.0.0.1:2375")

    @patch("container_network.config.os.path.exists")
    def test_detects_podman_socket(self, mock_exists):
        mock_exists.side_effect = lambda path: path == "/run/podman/podman.sock"

        self.assertEqual(detect_default_socket(), "/run/podman/podman.sock")

    @patch("container_network.config.os.path.exists", return_value=False)
    def test_falls_back_to_docker_socket(self, _):
        self.assertEqual(detect_default_socket(), "/var/run/docker.sock")


class TestRunScript(unittest.TestCase):
    @patch("container_network.main.subprocess.run")
    def test_output_relayed_to_log(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="hello\n", stderr="warn\n")

        with self.assertLogs("container_network.main", level="INFO") as logs:
            self.assertTrue(run_script("echo hello"))

        mock_run.assert_called_once_with(["/bin/sh", "-c", "echo hello"], capture_output=True, text=True)
        self.assertEqual([r.getMessage() for r in logs.records], ["hello", "warn"])

    @patch("container_network.main.subprocess.run")
    def test_nonzero_exit_fails(self, mock_run):
        mock_run.return_value = Mock(returncode=3, stdout="", stderr="")

        self.assertFalse(run_script("exit 3"))


@patch("container_network.main.signal.signal")
class TestRun(unittest.TestCase):
    def setUp(self):
        self.client = Mock()
        self.client.containers.list.return_value = []
        self.factory = Mock(return_value=self.client)
        self.cfg = Config(runtime_api="/tmp/docker.sock", watch_network="appnet")

    def test_clean_start_and_shutdown(self, _):
        stop = threading.Event()
        stop.set()
        self.cfg.shutdown_script = "echo bye"

        with patch("container_network.main.run_script", return_value=True) as script:
            self.assertEqual(run(self.cfg, self.factory, stop_event=stop), 0)

        self.factory.assert_called_once_with(base_url="unix:///tmp/docker.sock")
        self.client.ping.assert_called_once()
        self.client.containers.list.assert_called_once()
        script.assert_called_once_with("echo bye")

    def test_ping_failure_is_fatal(self, _):
        self.client.ping.side_effect = DockerException("connection refused")

        with self.assertLogs("container_network.main", level="ERROR"):
            self.assertEqual(run(self.cfg, self.factory, stop_event=threading.Event()), 1)
        self.client.containers.list.assert_not_called()

    def test_discovery_failure_is_fatal(self, _):
        self.client.containers.list.side_effect = APIError("cannot list")

        with self.assertLogs("container_network.main", level="ERROR"):
            self.assertEqual(run(self.cfg, self.factory, stop_event=threading.Event()), 1)

    def test_connection_reset_during_discovery_is_fatal(self, _):
        self.client.containers.list.side_effect = RequestsConnectionError("connection reset by peer")

        with self.assertLogs("container_network.main", level="ERROR") as logs:
            self.assertEqual(run(self.cfg, self.factory, stop_event=threading.Event()), 1)
        self.assertIn("connection reset by peer", logs.output[-1])

    def test_connection_error_on_ping_is_fatal(self, _):
        self.client.ping.side_effect = RequestsConnectionError("socket closed")

        with self.assertLogs("container_network.main", level="ERROR"):
            self.assertEqual(run(self.cfg, self.factory, stop_event=threading.Event()), 1)
        self.client.containers.list.assert_not_called()

    def test_startup_script_failure_aborts(self, _):
        self.cfg.startup_script = "exit 1"

        with patch("container_network.main.run_script", return_value=False):
            self.assertEqual(run(self.cfg, self.factory), 1)
        self.factory.assert_not_called()
