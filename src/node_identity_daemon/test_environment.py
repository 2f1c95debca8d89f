"""
Unit Tests for the Node Identity Environment File
"""

import os
import tempfile
import unittest

from dotenv import dotenv_values

from .environment import environment_values, write_env_file
from .resources import Instance, NetworkInterface, Volume


class TestEnvironmentFile(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.path = os.path.join(tmp.name, "run", "node-identity", "environment")
        self.instance = Instance(
            id="i-1", region="eu-west-1", node_id="N1",
            volume=Volume("vol-1", "N1", "i-1", False),
            network_interface=NetworkInterface("eni-1", "N1", "i-1", False, ip_address="10.0.1.10"),
        )

    def test_values(self):
        self.assertEqual(environment_values(self.instance), {
            "NODE_ID": "N1",
            "INSTANCE_ID": "i-1",
            "REGION": "eu-west-1",
            "VOLUME_ID": "vol-1",
            "NETWORK_INTERFACE_ID": "eni-1",
            "NETWORK_INTERFACE_IP": "10.0.1.10",
        })

    def test_missing_resources_are_blank(self):
        values = environment_values(Instance(id="i-1", region="eu-west-1"))
        self.assertEqual(values["VOLUME_ID"], "")
        self.assertEqual(values["NETWORK_INTERFACE_IP"], "")

    def test_creates_file_and_directory(self):
        write_env_file(self.path, self.instance)
        self.assertEqual(dotenv_values(self.path)["NODE_ID"], "N1")

    def test_preserves_unrelated_keys(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w") as f:
            f.write("OTHER=keep\nNODE_ID=old\n")

        write_env_file(self.path, self.instance)

        values = dotenv_values(self.path)
        self.assertEqual(values["OTHER"], "keep")
        self.assertEqual(values["NODE_ID"], "N1")

    def test_unwritable_location_raises(self):
        # A regular file where the parent directory should be
        blocker = os.path.dirname(os.path.dirname(self.path))
        with open(blocker, "w") as f:
            f.write("not a directory")
        with self.assertRaises(OSError):
            write_env_file(self.path, self.instance)


if __name__ == "__main__":
    unittest.main()
