import socket

import pytest

import llmlogproxy.cli as cli_mod


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


def test_port_is_free_detects_bound_port(busy_port):
    assert cli_mod.port_is_free("127.0.0.1", busy_port) is False


def test_find_available_port_skips_busy_port(monkeypatch):
    busy = {5000, 5001}
    monkeypatch.setattr(cli_mod, "port_is_free", lambda host, port: port not in busy)
    assert cli_mod.find_available_port("127.0.0.1", 5000, 10) == 5002


def test_find_available_port_returns_requested_port_when_free(monkeypatch):
    monkeypatch.setattr(cli_mod, "port_is_free", lambda host, port: True)
    assert cli_mod.find_available_port("127.0.0.1", 5000, 10) == 5000


def test_find_available_port_gives_up_after_retries(monkeypatch):
    monkeypatch.setattr(cli_mod, "port_is_free", lambda host, port: False)
    with pytest.raises(RuntimeError, match="No free port"):
        cli_mod.find_available_port("127.0.0.1", 5000, 2)


def test_main_switches_port_and_runs_uvicorn(monkeypatch):
    captured = {}
    monkeypatch.setattr(cli_mod, "port_is_free", lambda host, port: port != 6000)
    monkeypatch.setattr(
        cli_mod.uvicorn,
        "run",
        lambda app, host, port: captured.update(app=app, host=host, port=port),
    )
    monkeypatch.setattr("sys.argv", ["llmlogproxy", "--port", "6000", "--host", "127.0.0.1"])

    cli_mod.main()

    assert captured["host"] == "127.0.0.1"
    assert captured["port"] == 6001
    assert captured["app"].title == "llmlogproxy"
