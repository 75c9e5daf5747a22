import pytest

from webrtcpi.config.settings import RoomConfig


@pytest.fixture
def room_config():
    return RoomConfig(room_id="r1", width=640, height=480, frame_rate=30)
