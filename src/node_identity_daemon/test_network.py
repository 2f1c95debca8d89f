"""
Unit Tests for the Network Readiness Wait

Collaborators (sleep, interface lookup, sysctl write) are injected, so these
tests run without delay and without touching the host network stack.
"""

import os
import socket
import tempfile
import unittest
from collections import namedtuple
from unittest.mock import Mock, patch

from . import network as network_mod
from .network import wait_and_setup_interface, get_interface_name_by_ip, set_rp_filter
from .structured_events import StructuredEventLogger, ActionResult

Addr = namedtuple("Addr", "family address netmask broadcast ptp")


class TestWaitAndSetupInterface(unittest.TestCase):

    def setUp(self):
        self.sleeps = []

    def wait(self, resolve, configure, **kwargs):
        return wait_and_setup_interface("10.0.1.10", sleep=self.sleeps.append,
                                        resolve=resolve, configure=configure, **kwargs)

    def test_ready_on_first_attempt(self):
        configure = Mock()
        result = self.wait(Mock(return_value="eth1"), configure)
        self.assertTrue(result.ready)
        self.assertEqual(result.interface_name, "eth1")
        self.assertEqual(result.attempts, 1)
        configure.assert_called_once_with("eth1")
        self.assertEqual(self.sleeps, [5.0])

    def test_waits_for_interface_to_appear(self):
        resolve = Mock(side_effect=[None, None, "eth1"])
        result = self.wait(resolve, Mock())
        self.assertTrue(result.ready)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(self.sleeps), 3)

    def test_configure_failure_retried(self):
        configure = Mock(side_effect=[PermissionError("read-only"), None])
        result = self.wait(Mock(return_value="eth1"), configure)
        self.assertTrue(result.ready)
        self.assertEqual(configure.call_count, 2)

    def test_exhaustion_is_returned_not_raised(self):
        structured_logger = Mock(spec=StructuredEventLogger)
        result = self.wait(Mock(return_value=None), Mock(), attempts=5, delay=5.0,
                           structured_logger=structured_logger)
        self.assertFalse(result.ready)
        self.assertEqual(result.result, ActionResult.FAILURE)
        self.assertEqual(result.attempts, 5)
        self.assertEqual(self.sleeps, [5.0] * 5)
        self.assertIn("10.0.1.10", result.error_message)
        kwargs = structured_logger.log_network_readiness.call_args.kwargs
        self.assertEqual(kwargs["result"], ActionResult.FAILURE)
        self.assertEqual(kwargs["attempts"], 5)

    def test_lookup_errors_are_not_fatal(self):
        resolve = Mock(side_effect=OSError("netlink"))
        result = self.wait(resolve, Mock(), attempts=2)
        self.assertFalse(result.ready)
        self.assertIn("netlink", result.error_message)


class TestInterfaceLookup(unittest.TestCase):

    @patch.object(network_mod.psutil, "net_if_addrs")
    def test_finds_interface_by_ipv4(self, net_if_addrs):
        net_if_addrs.return_value = {
            "lo": [Addr(socket.AF_INET, "127.0.0.1", None, None, None)],
            "eth0": [Addr(socket.AF_INET, "10.0.0.5", None, None, None)],
            "eth1": [Addr(socket.AF_INET6, "fe80::1%eth1", None, None, None),
                     Addr(socket.AF_INET, "10.0.1.10", None, None, None)],
        }
        self.assertEqual(get_interface_name_by_ip("10.0.1.10"), "eth1")

    @patch.object(network_mod.psutil, "net_if_addrs")
    def test_finds_interface_by_scoped_ipv6(self, net_if_addrs):
        net_if_addrs.return_value = {"eth1": [Addr(socket.AF_INET6, "fe80::1%eth1", None, None, None)]}
        self.assertEqual(get_interface_name_by_ip("fe80::1"), "eth1")

    @patch.object(network_mod.psutil, "net_if_addrs", return_value={})
    def test_missing_interface(self, _):
        self.assertIsNone(get_interface_name_by_ip("10.0.1.10"))

    def test_invalid_address(self):
        with self.assertRaises(ValueError):
            get_interface_name_by_ip("not-an-ip")


class TestSetRpFilter(unittest.TestCase):

    def test_writes_loose_mode(self):
        with tempfile.TemporaryDirectory() as tmp:
            os.makedirs(os.path.join(tmp, "eth1"))
            template = os.path.join(tmp, "{iface}", "rp_filter")
            set_rp_filter("eth1", path_template=template)
            with open(template.format(iface="eth1")) as f:
                self.assertEqual(f.read(), "2\n")

    def test_rejects_path_like_names(self):
        for name in ("", "..", "eth1/../all"):
            with self.subTest(name=name):
                with self.assertRaises(ValueError):
                    set_rp_filter(name)


if __name__ == "__main__":
    unittest.main()
