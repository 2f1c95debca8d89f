"""
Unit Tests for Configuration Management

Test Coverage:
    - Default values
    - Loading from environment variables
    - Command-line flag parsing and overrides
    - Configuration validation (ranges, paths, filters)
"""

import os
import unittest
from importlib import reload
from unittest.mock import patch

from . import __version__
from . import config as config_module


class TestConfigLoading(unittest.TestCase):
    """Test configuration loading from environment variables."""

    def setUp(self):
        self.original_env = os.environ.copy()
        for key in ("FILTERS", "BLOCK_DEVICE", "CHECK_INTERVAL_SECONDS", "MAX_VOLUME_ATTACH_TRIES",
                    "CREATE_FILE_SYSTEM", "MOUNT_FILE_SYSTEM", "RUN_PASSIVE", "NODE_ID_TAG", "ENV_FILE"):
            os.environ.pop(key, None)

    def tearDown(self):
        os.environ.clear()
        os.environ.update(self.original_env)
        reload(config_module)

    def test_defaults(self):
        reload(config_module)
        cfg = config_module.Config()
        self.assertEqual(cfg.block_device, "/dev/xvde")
        self.assertEqual(cfg.file_system_type, "ext4")
        self.assertEqual(cfg.mount_point, "/data")
        self.assertEqual(cfg.node_id_tag, "NodeID")
        self.assertEqual(cfg.check_interval, 120)
        self.assertEqual(cfg.max_volume_attach_tries, 3)
        self.assertEqual(cfg.readiness_attempts, 5)
        self.assertEqual(cfg.readiness_delay, 5.0)
        self.assertEqual(cfg.network_device_index, 1)
        self.assertFalse(cfg.create_file_system)
        self.assertFalse(cfg.mount_file_system)
        self.assertFalse(cfg.run_passive)

    def test_custom_values(self):
        env = {
            "FILTERS": "tag:Cluster=",
            "BLOCK_DEVICE": "/dev/nvme1n1",
            "CHECK_INTERVAL_SECONDS": "30",
            "MAX_VOLUME_ATTACH_TRIES": "5",
            "CREATE_FILE_SYSTEM": "TRUE",
            "RUN_PASSIVE": "true",
        }
        with patch.dict(os.environ, env, clear=False):
            reload(config_module)
            cfg = config_module.Config()
        self.assertEqual(cfg.filters, "tag:Cluster=")
        self.assertEqual(cfg.block_device, "/dev/nvme1n1")
        self.assertEqual(cfg.check_interval, 30)
        self.assertEqual(cfg.max_volume_attach_tries, 5)
        self.assertTrue(cfg.create_file_system)
        self.assertTrue(cfg.run_passive)

    def test_boolean_values_other_than_true_are_false(self):
        for value in ("false", "1", "yes", ""):
            with self.subTest(value=value):
                with patch.dict(os.environ, {"MOUNT_FILE_SYSTEM": value}, clear=False):
                    reload(config_module)
                    self.assertFalse(config_module.Config().mount_file_system)


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.parser = config_module.build_arg_parser()

    def test_no_flags_leave_config_untouched(self):
        cfg = config_module.Config()
        before = dict(vars(cfg))
        config_module.apply_cli_overrides(cfg, self.parser.parse_args([]))
        self.assertEqual(vars(cfg), before)

    def test_flags_override_config(self):
        args = self.parser.parse_args([
            "--filters=tag-key=Env,tag:Profile=foo",
            "--block-device", "/dev/xvdf",
            "--create-file-system",
            "--file-system-type", "xfs",
            "--mount-fs",
            "--mount-point", "/srv/data",
            "--env-file", "/etc/node/env",
        ])
        cfg = config_module.apply_cli_overrides(config_module.Config(), args)
        self.assertEqual(cfg.filters, "tag-key=Env,tag:Profile=foo")
        self.assertEqual(cfg.block_device, "/dev/xvdf")
        self.assertTrue(cfg.create_file_system)
        self.assertEqual(cfg.file_system_type, "xfs")
        self.assertTrue(cfg.mount_file_system)
        self.assertEqual(cfg.mount_point, "/srv/data")
        self.assertEqual(cfg.env_file, "/etc/node/env")

    def test_version_exits_zero(self):
        with patch("sys.stdout") as stdout, self.assertRaises(SystemExit) as ctx:
            self.parser.parse_args(["--version"])
        self.assertEqual(ctx.exception.code, 0)
        written = "".join(call.args[0] for call in stdout.write.call_args_list)
        self.assertIn(__version__, written)

    def test_help_exits_zero(self):
        with patch("sys.stdout"), self.assertRaises(SystemExit) as ctx:
            self.parser.parse_args(["--help"])
        self.assertEqual(ctx.exception.code, 0)


class TestConfigValidation(unittest.TestCase):

    def setUp(self):
        self.cfg = config_module.Config()
        self.cfg.filters = ""
        self.cfg.block_device = "/dev/xvde"
        self.cfg.mount_point = "/data"
        self.cfg.env_file = "/run/node-identity/environment"
        self.cfg.node_id_tag = "NodeID"
        self.cfg.check_interval = 120
        self.cfg.max_volume_attach_tries = 3

    def test_valid_configuration(self):
        self.assertEqual(config_module.validate_configuration(self.cfg), [])

    def test_numeric_ranges(self):
        self.cfg.check_interval = 0
        self.cfg.max_volume_attach_tries = 1000
        errors = config_module.validate_configuration(self.cfg)
        self.assertIn("CHECK_INTERVAL must be between 1 and 3600, got 0", errors)
        self.assertIn("MAX_VOLUME_ATTACH_TRIES must be between 1 and 100, got 1000", errors)

    def test_relative_paths_rejected(self):
        self.cfg.mount_point = "data"
        errors = config_module.validate_configuration(self.cfg)
        self.assertIn("MOUNT_POINT must be an absolute path, got 'data'", errors)

    def test_filesystem_type_required_when_mounting(self):
        self.cfg.mount_file_system = True
        self.cfg.file_system_type = " "
        errors = config_module.validate_configuration(self.cfg)
        self.assertTrue(any("FILE_SYSTEM_TYPE" in e for e in errors))

    def test_invalid_filters(self):
        self.cfg.filters = "tag-key"
        errors = config_module.validate_configuration(self.cfg)
        self.assertTrue(any(e.startswith("Invalid FILTERS expression") for e in errors))

    def test_empty_node_id_tag(self):
        self.cfg.node_id_tag = ""
        self.assertIn("NODE_ID_TAG cannot be empty", config_module.validate_configuration(self.cfg))


if __name__ == "__main__":
    unittest.main()
