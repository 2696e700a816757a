import os
from dataclasses import dataclass

import pytest

from vpnmux.expose_port import ExposePortError, expose_port
from vpnmux.proxy import TCPAddr, UDPAddr


@dataclass
class FakeAddr:
    network: str
    text: str

    def __str__(self):
        return self.text


@pytest.fixture
def control_fs(monkeypatch):
    """Make mkdir also create an empty ctl file, as the control filesystem would."""
    real_mkdir = os.mkdir

    def fake_mkdir(path, mode=0o777):
        real_mkdir(path)
        with open(os.path.join(path, "ctl"), "wb"):
            pass

    monkeypatch.setattr(os, "mkdir", fake_mkdir)


def test_expose_tcp_writes_name_to_ctl(tmp_path, control_fs):
    host = TCPAddr("127.0.0.1", 8080)
    container = TCPAddr("10.0.0.2", 80)
    ctl = expose_port(host, container, str(tmp_path))
    try:
        name = "tcp:127.0.0.1:8080:tcp:10.0.0.2:80"
        assert not ctl.closed
        assert (tmp_path / name).is_dir()
        assert (tmp_path / name / "ctl").read_bytes() == name.encode()
    finally:
        ctl.close()


def test_expose_udp_uses_udp_network(tmp_path, control_fs):
    ctl = expose_port(UDPAddr("0.0.0.0", 53), UDPAddr("10.0.0.3", 53), str(tmp_path))
    try:
        assert [p.name for p in tmp_path.iterdir()] == ["udp:0.0.0.0:53:udp:10.0.0.3:53"]
    finally:
        ctl.close()


def test_error_response_raises_and_removes_ctl(tmp_path, control_fs):
    host = FakeAddr("ERROR port", "busy")
    container = TCPAddr("10.0.0.2", 80)
    name = f"ERROR port:busy:tcp:{container}"
    with pytest.raises(ExposePortError) as info:
        expose_port(host, container, str(tmp_path))
    assert str(info.value) == name[len("ERROR "):]
    assert not (tmp_path / name / "ctl").exists()


def test_existing_directory_fails(tmp_path):
    host = TCPAddr("127.0.0.1", 8080)
    container = TCPAddr("10.0.0.2", 80)
    (tmp_path / f"tcp:{host}:tcp:{container}").mkdir()
    with pytest.raises(FileExistsError):
        expose_port(host, container, str(tmp_path))


def test_missing_ctl_fails(tmp_path):
    with pytest.raises(OSError):
        expose_port(TCPAddr("127.0.0.1", 1), TCPAddr("10.0.0.2", 2), str(tmp_path))


def test_unsupported_address_type(tmp_path):
    with pytest.raises(TypeError):
        expose_port(object(), TCPAddr("10.0.0.2", 2), str(tmp_path))