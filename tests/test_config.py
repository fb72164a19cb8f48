"""Tests for configuration defaults and derived paths."""

import pytest

from socks_tunnel.config import Config
from socks_tunnel.exceptions import StateDirError


def test_derived_paths(tmp_path):
    cfg = Config(state_dir=tmp_path / "state")
    assert cfg.pid_file == tmp_path / "state" / "tunnel.pid"
    assert cfg.ssh_pid_file == tmp_path / "state" / "ssh.pid"
    assert cfg.stop_flag == tmp_path / "state" / "stop"
    assert cfg.log_file == tmp_path / "state" / "tunnel.log"


def test_state_dir_accepts_string(tmp_path):
    cfg = Config(state_dir=str(tmp_path / "s"))
    assert cfg.pid_file.parent == tmp_path / "s"


def test_addresses(tmp_path):
    cfg = Config(state_dir=tmp_path, ssh_user="bob", ssh_host="h", ssh_port=22, socks_host="::1", socks_port=9050)
    assert cfg.listen_address == "::1:9050"
    assert cfg.ssh_target == "bob@h:22"


def test_ensure_state_dir_creates_log(tmp_path):
    cfg = Config(state_dir=tmp_path / "new" / "dir")
    cfg.ensure_state_dir()
    assert cfg.log_file.exists()


def test_ensure_state_dir_unwritable(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    with pytest.raises(StateDirError):
        Config(state_dir=blocker / "state").ensure_state_dir()


def test_to_env_round_trips_settings(tmp_path):
    cfg = Config(state_dir=tmp_path, socks_port=1999, kill_listeners=False, ssh_binary="/usr/bin/ssh")
    env = cfg.to_env()
    assert env["SOCKS_PORT"] == "1999"
    assert env["KILL_SSH_LISTENERS_ON_PORT"] == "0"
    assert env["STATE_DIR"] == str(tmp_path)
    assert env["SSH_BIN"] == "/usr/bin/ssh"
    assert all(isinstance(value, str) for value in env.values())
