"""Tests for container_network.iptables - command construction and failure handling"""
import subprocess
import unittest
from unittest.mock import patch

from container_network.iptables import INSTALL, RETRACT, IptablesExecutor


@patch("container_network.iptables.subprocess.run")
class TestIptablesExecutor(unittest.TestCase):
    def test_mark_rule(self, mock_run):
        executor = IptablesExecutor(mark="0x2")

        self.assertTrue(executor.mark_rule(INSTALL, "tcp", 80))

        mock_run.assert_called_once_with(
            ["iptables", "-t", "mangle", "-A", "PREROUTING", "-p", "tcp", "--sport", "80",
             "-j", "MARK", "--set-mark", "0x2"],
            check=True, capture_output=True, text=True,
        )

    def test_dnat_rule(self, mock_run):
        IptablesExecutor().dnat_rule(INSTALL, "udp", 53, "10.0.0.5")

        self.assertEqual(
            mock_run.call_args[0][0],
            ["iptables", "-t", "nat", "-A", "PREROUTING", "-p", "udp", "--dport", "53",
             "-j", "DNAT", "--to-destination", "10.0.0.5:53"],
        )

    def test_forward_rule_retract(self, mock_run):
        IptablesExecutor().forward_rule(RETRACT, "tcp", 8080, "10.0.0.5")

        self.assertEqual(
            mock_run.call_args[0][0],
            ["iptables", "-D", "FORWARD", "-p", "tcp", "-d", "10.0.0.5", "--dport", "8080", "-j", "ACCEPT"],
        )

    def test_install_and_retract_share_match_criteria(self, mock_run):
        executor = IptablesExecutor(mark="7")
        executor.mark_rule(INSTALL, "tcp", 80)
        executor.mark_rule(RETRACT, "tcp", 80)

        add, delete = (c[0][0] for c in mock_run.call_args_list)
        self.assertEqual([a for a in add if a != "-A"], [d for d in delete if d != "-D"])

    def test_failure_is_logged_not_raised(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, "iptables", stderr="Bad rule")

        with self.assertLogs("container_network.iptables", level="ERROR") as logs:
            self.assertFalse(IptablesExecutor().dnat_rule(RETRACT, "tcp", 80, "10.0.0.5"))
        self.assertIn("Bad rule", logs.output[0])

    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("iptables")

        with self.assertLogs("container_network.iptables", level="ERROR"):
            self.assertFalse(IptablesExecutor().forward_rule(INSTALL, "tcp", 80, "10.0.0.5"))

    def test_dry_run_does_not_execute(self, mock_run):
        with self.assertLogs("container_network.iptables", level="INFO") as logs:
            self.assertTrue(IptablesExecutor(dry_run=True).dnat_rule(INSTALL, "tcp", 80, "10.0.0.5"))

        mock_run.assert_not_called()
        self.assertIn("[DRY-RUN] iptables -t nat -A PREROUTING", logs.output[0])
