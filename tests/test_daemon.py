"""
tests/test_daemon.py

Tests for daemon settings resolution and the refusal to start without the
required inputs.
"""

import unittest
from unittest import mock

from cd_system import config, daemon
from cd_system.config import DaemonSettings, SettingsError, extract_repo_name


class TestSettings(unittest.TestCase):
    def test_extract_repo_name(self):
        self.assertEqual(extract_repo_name("https://github.com/acme/app.git"), "app")
        self.assertEqual(extract_repo_name("git@github.com:acme/app"), "app")
        self.assertEqual(extract_repo_name("https://github.com/acme/app/"), "app")
        self.assertIsNone(extract_repo_name(None))

    def test_from_env_defaults(self):
        settings = DaemonSettings.from_env({"GIT_URL": "https://github.com/acme/app.git", "WEBHOOK_SECRET": "s"})
        self.assertEqual(settings.port, config.DEFAULT_PORT)
        self.assertEqual(settings.workdir, "app")
        self.assertEqual(settings.config_file, config.CONFIG_FILE)

    def test_overrides_win(self):
        environ = {"GIT_URL": "https://github.com/acme/app.git", "WEBHOOK_SECRET": "s", "PORT": "8000"}
        settings = DaemonSettings.from_env(environ, port=9000, workdir="/srv/app", host=None)
        self.assertEqual(settings.port, 9000)
        self.assertEqual(settings.workdir, "/srv/app")
        self.assertEqual(settings.host, config.DEFAULT_HOST)

    def test_missing_git_url(self):
        with self.assertRaises(SettingsError):
            DaemonSettings.from_env({"WEBHOOK_SECRET": "s"})

    def test_missing_secret(self):
        with self.assertRaises(SettingsError):
            DaemonSettings.from_env({"GIT_URL": "https://github.com/acme/app.git"})


class TestMain(unittest.TestCase):
    @mock.patch.dict("os.environ", {}, clear=True)
    def test_refuses_to_start_without_settings(self):
        with self.assertRaises(SystemExit) as ctx:
            daemon.main([])
        self.assertEqual(ctx.exception.code, 1)

    @mock.patch.dict("os.environ", {"GIT_URL": "https://github.com/acme/app.git", "WEBHOOK_SECRET": "s"}, clear=True)
    @mock.patch("cd_system.daemon.create_app")
    @mock.patch("cd_system.daemon.DeploymentOrchestrator")
    def test_bootstraps_and_serves(self, orchestrator_cls, create_app):
        daemon.main(["--port", "9000"])

        orchestrator = orchestrator_cls.return_value
        orchestrator_cls.assert_called_once_with("https://github.com/acme/app.git", "app", config.CONFIG_FILE)
        orchestrator.start.assert_called_once_with()
        orchestrator.submit.assert_called_once_with(orchestrator.bootstrap)
        create_app.return_value.run.assert_called_once_with(host=config.DEFAULT_HOST, port=9000, use_reloader=False)
        orchestrator.shutdown.assert_called_once_with(timeout=config.STOP_GRACE_PERIOD)


if __name__ == "__main__":
    unittest.main()
