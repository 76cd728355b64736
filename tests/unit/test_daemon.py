#!/usr/bin/env python3
"""Unit tests for PID file handling and privilege dropping"""

import os
from unittest.mock import patch

import pytest

from aaaa_filter.daemon import DaemonError, create_pid_file, drop_privileges, remove_pid_file


class TestPidFile:
    """Test PID file lifecycle"""

    def test_create_and_remove(self, tmp_path):
        pid_file = tmp_path / "run" / "aaaa-filter.pid"

        create_pid_file(str(pid_file))
        assert pid_file.read_text().strip() == str(os.getpid())

        remove_pid_file(str(pid_file))
        assert not pid_file.exists()

    def test_foreign_pid_file_is_kept(self, tmp_path):
        pid_file = tmp_path / "aaaa-filter.pid"
        pid_file.write_text("999999\n")

        remove_pid_file(str(pid_file))

        assert pid_file.exists()

    def test_remove_missing_file(self, tmp_path):
        remove_pid_file(str(tmp_path / "missing.pid"))

    def test_create_failure_raises(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        with pytest.raises(DaemonError):
            create_pid_file(str(blocker / "aaaa-filter.pid"))


class TestDropPrivileges:
    """Test privilege dropping"""

    def test_skipped_when_not_root(self):
        with patch("aaaa_filter.daemon.os.getuid", return_value=1000), patch(
            "aaaa_filter.daemon.os.setuid"
        ) as mock_setuid:
            drop_privileges("nobody", "nogroup")

        mock_setuid.assert_not_called()

    def test_unknown_user_raises(self):
        with patch("aaaa_filter.daemon.os.getuid", return_value=0):
            with pytest.raises(DaemonError, match="not found"):
                drop_privileges("no-such-user-aaaa-filter", "no-such-group-aaaa-filter")

    def test_switches_group_then_user(self):
        with patch("aaaa_filter.daemon.os.getuid", return_value=0), patch(
            "aaaa_filter.daemon.pwd.getpwnam"
        ) as getpwnam, patch("aaaa_filter.daemon.grp.getgrnam") as getgrnam, patch(
            "aaaa_filter.daemon.os.setgroups"
        ), patch(
            "aaaa_filter.daemon.os.setgid"
        ) as setgid, patch(
            "aaaa_filter.daemon.os.setuid"
        ) as setuid:
            getpwnam.return_value.pw_uid = 65534
            getgrnam.return_value.gr_gid = 65533
            drop_privileges("nobody", "nogroup")

        setgid.assert_called_once_with(65533)
        setuid.assert_called_once_with(65534)
