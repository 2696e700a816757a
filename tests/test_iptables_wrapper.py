import os
import signal
import stat
import subprocess
import sys
import time

import pytest

from vpnmux import iptables_wrapper
from vpnmux.iptables_wrapper import (
    Capture,
    ExposedPort,
    IPPortCapture,
    PatternMismatch,
    insert,
    main,
    match_pattern,
    pid_file_name,
    remove,
    use_native_port_forwarding,
)

INGRESS = [
    "--wait", "-t", "nat", "-I", "DOCKER-INGRESS", "-p", "tcp", "--dport", "80",
    "-j", "DNAT", "--to-destination", "172.18.0.2:80",
]


def make_script(path, body):
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def ingress_pattern():
    action, proto, dport, ip_port = Capture(), Capture(), Capture(), IPPortCapture()
    pattern = [
        "--wait", "-t", "nat", action, "DOCKER-INGRESS", "-p", proto, "--dport", dport,
        "-j", "DNAT", "--to-destination", ip_port,
    ]
    return pattern, action, proto, dport, ip_port


def test_pid_file_name():
    port = ExposedPort("tcp", "80", "172.18.0.2", "80")
    assert pid_file_name(port, "/var/run/service-port-opener") == (
        "/var/run/service-port-opener/tcp.80.172.18.0.2.80.pid"
    )


def test_match_pattern_captures():
    pattern, action, proto, dport, ip_port = ingress_pattern()
    match_pattern(INGRESS, pattern)
    assert str(action) == "-I"
    assert str(proto) == "tcp"
    assert str(dport) == "80"
    assert (ip_port.ip, ip_port.port) == ("172.18.0.2", "80")
    assert str(ip_port) == "172.18.0.2:80"


def test_match_pattern_shorter_input():
    pattern, *_ = ingress_pattern()
    with pytest.raises(PatternMismatch):
        match_pattern(INGRESS[:5], pattern)


def test_match_pattern_literal_mismatch():
    pattern, *_ = ingress_pattern()
    args = list(INGRESS)
    args[4] = "OUTPUT"
    with pytest.raises(PatternMismatch):
        match_pattern(args, pattern)


def test_match_pattern_bad_ip_port():
    pattern, *_ = ingress_pattern()
    args = INGRESS[:-1] + ["172.18.0.2"]
    with pytest.raises(PatternMismatch):
        match_pattern(args, pattern)


def test_match_pattern_unknown_type():
    with pytest.raises(TypeError):
        match_pattern(["a"], [42])


def test_ip_port_splits_once():
    capture = IPPortCapture()
    capture.set("::1:80")
    assert (capture.ip, capture.port) == ("", ":1:80")


@pytest.mark.parametrize(
    "content, expected",
    [("1\n", True), (" TRUE \n", True), ("true", True), ("0\n", False), ("", False), ("yes", False)],
)
def test_use_native_port_forwarding(tmp_path, content, expected):
    key = tmp_path / "native-port-forwarding"
    key.write_text(content)
    assert use_native_port_forwarding(str(key)) is expected


def test_use_native_port_forwarding_missing(tmp_path):
    assert use_native_port_forwarding(str(tmp_path / "absent")) is False


def test_insert_passes_arguments_and_records_pid(tmp_path):
    out = tmp_path / "args.txt"
    script = make_script(tmp_path / "expose", f'echo "$@" > "{out}"')
    port = ExposedPort("tcp", "80", "172.18.0.2", "80")
    process = insert(script, port, str(tmp_path))
    assert process.wait(timeout=10) == 0
    assert out.read_text().strip() == (
        "-proto tcp -container-ip 172.18.0.2 -container-port 80 "
        "-host-ip 0.0.0.0 -host-port 80 -i -no-local-ip"
    )
    with open(pid_file_name(port, str(tmp_path))) as f:
        assert int(f.read()) == process.pid


def test_remove_kills_and_deletes(tmp_path):
    port = ExposedPort("udp", "53", "10.0.0.3", "53")
    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    pid_file = pid_file_name(port, str(tmp_path))
    with open(pid_file, "w") as f:
        f.write(str(process.pid))
    remove(port, str(tmp_path))
    assert process.wait(timeout=10) == -signal.SIGTERM
    assert not os.path.exists(pid_file)


def test_remove_missing_pid_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        remove(ExposedPort("tcp", "1", "10.0.0.1", "1"), str(tmp_path))


def test_remove_bad_pid(tmp_path):
    port = ExposedPort("tcp", "1", "10.0.0.1", "1")
    with open(pid_file_name(port, str(tmp_path)), "w") as f:
        f.write("not-a-pid")
    with pytest.raises(ValueError):
        remove(port, str(tmp_path))


def test_main_native_passes_exit_code(tmp_path, monkeypatch):
    key = tmp_path / "key"
    key.write_text("1\n")
    monkeypatch.setattr(iptables_wrapper, "CONFIG_KEY", str(key))
    monkeypatch.setattr(iptables_wrapper, "IPTABLES_PATH", make_script(tmp_path / "iptables", "exit 3"))
    assert main(["-L"]) == 3


def test_main_without_iptables(tmp_path, monkeypatch):
    monkeypatch.setattr(iptables_wrapper, "IPTABLES_PATH", str(tmp_path / "missing"))
    assert main(["-L"]) == 1


def test_main_insert_then_delete(tmp_path, monkeypatch):
    pid_dir = tmp_path / "pids"
    monkeypatch.setattr(iptables_wrapper, "CONFIG_KEY", str(tmp_path / "absent"))
    monkeypatch.setattr(iptables_wrapper, "PID_DIR", str(pid_dir))
    monkeypatch.setattr(iptables_wrapper, "IPTABLES_PATH", make_script(tmp_path / "iptables", "exit 0"))
    monkeypatch.setattr(
        iptables_wrapper, "VPNKIT_EXPOSE_PORT", make_script(tmp_path / "expose", "exec sleep 30")
    )
    port = ExposedPort("tcp", "80", "172.18.0.2", "80")
    pid_file = pid_file_name(port, str(pid_dir))

    assert main(INGRESS) == 0
    assert os.path.exists(pid_file)

    delete = list(INGRESS)
    delete[3] = "-D"
    assert main(delete) == 0
    deadline = time.monotonic() + 5
    while os.path.exists(pid_file) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not os.path.exists(pid_file)


def test_main_without_expose_command(tmp_path, monkeypatch):
    monkeypatch.setattr(iptables_wrapper, "CONFIG_KEY", str(tmp_path / "absent"))
    monkeypatch.setattr(iptables_wrapper, "IPTABLES_PATH", make_script(tmp_path / "iptables", "exit 0"))
    monkeypatch.setattr(iptables_wrapper, "VPNKIT_EXPOSE_PORT", str(tmp_path / "no-such-command"))
    assert main(INGRESS) == 1