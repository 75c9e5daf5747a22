"""Tests for the launcher."""

import pytest

from webrtcpi import main
from webrtcpi.config import settings


def test_parse_args():
    args = main.parse_args(["sender", "--server-url", "ws://pi:3000", "--room", "lab"])

    assert args.command == "sender"
    assert args.server_url == "ws://pi:3000"
    assert args.room == "lab"


def test_parse_args_rejects_unknown_command():
    with pytest.raises(SystemExit):
        main.parse_args(["broadcast"])


def test_service_rejects_unknown_command():
    with pytest.raises(ValueError):
        main.WebRTCPiService("broadcast")


async def test_server_command_starts_relay_and_api(monkeypatch):
    monkeypatch.setattr(settings, "HOST", "127.0.0.1")
    monkeypatch.setattr(settings, "PORT", 0)
    monkeypatch.setattr(settings, "API_HOST", "127.0.0.1")
    monkeypatch.setattr(settings, "API_PORT", 0)
    monkeypatch.setattr(settings, "SIGNALING_SSL_CERT_FILE", None)
    monkeypatch.setattr(settings, "SIGNALING_SSL_KEY_FILE", None)

    service = main.WebRTCPiService("server")
    await service.start()

    try:
        assert service.running
        assert service.signaling_server.running
        assert service.signaling_server.port != 0
        assert service.session_manager is None
    finally:
        await service.stop()

    assert not service.running
    assert not service.signaling_server.running
