"""Tests for listener discovery, termination and reclaim."""

import os
import subprocess
import sys
from unittest.mock import patch

import psutil

from socks_tunnel.models import Listener
from socks_tunnel.ports import TunnelIdentity


class TestPortBinding:
    def test_free_port_is_not_bound(self, ports, config):
        assert not ports.is_port_bound(config.socks_host, config.socks_port)

    def test_listening_socket_is_bound(self, ports, config, listening_socket):
        assert ports.is_port_bound(config.socks_host, config.socks_port)

    def test_bind_probe_when_socket_table_denied(self, ports, config, listening_socket):
        with patch("socks_tunnel.ports.psutil.net_connections", side_effect=psutil.AccessDenied()):
            assert ports.is_port_bound(config.socks_host, config.socks_port)

    def test_bind_probe_free_port(self, ports, config):
        with patch("socks_tunnel.ports.psutil.net_connections", side_effect=psutil.AccessDenied()):
            assert not ports.is_port_bound(config.socks_host, config.socks_port)


class TestListeningProcesses:
    def test_finds_foreign_listener(self, ports, config, foreign_listener):
        listeners = ports.listening_processes(config.socks_port)
        assert [l.pid for l in listeners] == [foreign_listener.pid]
        assert "-c" in listeners[0].argv

    def test_none_when_free(self, ports, config):
        assert ports.listening_processes(config.socks_port) == []

    def test_enumeration_failure_is_empty(self, ports, config):
        with patch("socks_tunnel.ports.psutil.net_connections", side_effect=OSError("boom")):
            assert ports.listening_processes(config.socks_port) == []

    def test_describe_listeners(self, ports, config):
        text = ports.describe_listeners(
            config.socks_port, [Listener(pid=42, command="ssh -N -D 1080", argv=["ssh"])]
        )
        assert f"TCP/{config.socks_port}" in text
        assert "PID=42" in text
        assert "ssh -N -D 1080" in text


class TestTunnelIdentity:
    def test_recorded_pid_matches(self):
        identity = TunnelIdentity(known_pids=[1234])
        assert identity(Listener(pid=1234, command="anything", argv=["anything"]))

    def test_ssh_command_line_matches(self):
        identity = TunnelIdentity()
        assert identity(Listener(pid=1, argv=["ssh", "-N", "-D", "127.0.0.1:1080"]))
        assert identity(Listener(pid=1, argv=["/usr/bin/ssh", "-N", "-D", "1080"]))

    def test_foreign_process_does_not_match(self):
        identity = TunnelIdentity(known_pids=[None, 5])
        assert not identity(Listener(pid=1, argv=["nginx", "-g", "daemon off;"]))
        assert not identity(Listener(pid=1, argv=["/usr/bin/sshd", "-D"]))

    def test_unreadable_command_line_does_not_match(self):
        assert not TunnelIdentity()(Listener(pid=1))

    def test_custom_launcher_name(self):
        identity = TunnelIdentity(launcher="/opt/bin/autossh")
        assert identity(Listener(pid=1, argv=["autossh", "-M", "0"]))
        assert not identity(Listener(pid=1, argv=["ssh"]))


class TestTerminate:
    def test_terminates_process(self, ports, sleeper):
        proc = sleeper()
        ports.terminate(proc.pid)
        assert not psutil.pid_exists(proc.pid)

    def test_kills_process_ignoring_sigterm(self, ports):
        proc = subprocess.Popen(
            [
                sys.executable,
                "-c",
                "import signal, time\n"
                "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                "print('ready', flush=True)\n"
                "time.sleep(60)\n",
            ],
            stdout=subprocess.PIPE,
        )
        try:
            assert proc.stdout.readline().strip() == b"ready"
            ports.terminate(proc.pid, timeout=0.5)
            assert not psutil.pid_exists(proc.pid)
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.stdout.close()

    def test_missing_pid_is_silent(self, ports):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        ports.terminate(proc.pid)
        ports.terminate(None)


class TestReclaim:
    def test_only_matching_listeners_are_terminated(self, ports, config):
        listeners = [
            Listener(pid=101, command="ssh -N -D 1080", argv=["ssh", "-N", "-D", "1080"]),
            Listener(pid=102, command="python -m http.server", argv=["python", "-m", "http.server"]),
        ]
        with patch.object(ports, "listening_processes", return_value=listeners), \
                patch.object(ports, "terminate") as terminate:
            ports.reclaim(config.socks_port, TunnelIdentity())

        terminate.assert_called_once_with(101)

    def test_never_terminates_itself(self, ports, config):
        me = Listener(pid=os.getpid(), argv=["ssh"])
        with patch.object(ports, "listening_processes", return_value=[me]), \
                patch.object(ports, "terminate") as terminate:
            ports.reclaim(config.socks_port, TunnelIdentity(known_pids=[os.getpid()]))

        terminate.assert_not_called()

    def test_disabled_reclaim_is_noop(self, ports, config):
        config.kill_listeners = False
        with patch.object(ports, "listening_processes") as listening, \
                patch.object(ports, "terminate") as terminate:
            ports.reclaim(config.socks_port, TunnelIdentity())

        listening.assert_not_called()
        terminate.assert_not_called()

    def test_foreign_listener_survives_reclaim(self, ports, config, foreign_listener):
        ports.reclaim(config.socks_port, TunnelIdentity())

        assert foreign_listener.poll() is None
        assert ports.is_port_bound(config.socks_host, config.socks_port)
