"""Tests for the room-keyed signaling relay."""

import pytest

from webrtcpi.server.signaling_server import SignalingError, SignalingServer

from fakes import FakeSocket

OFFER = {"type": "offer", "sdp": "v=0\r\n"}
ANSWER = {"type": "answer", "sdp": "v=0\r\n"}


def connect(server, count):
    sockets = [FakeSocket() for _ in range(count)]
    ids = [server.register(socket).participant_id for socket in sockets]
    return ids, sockets


async def join_all(server, ids, room_id="r1"):
    for participant_id in ids:
        await server.join(participant_id, room_id)


async def test_join_announces_to_other_members_only():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 3)

    await join_all(server, ids)

    assert sockets[0].events("user-connected") == [[ids[1]], [ids[2]]]
    assert sockets[1].events("user-connected") == [[ids[2]]]
    assert sockets[2].events("user-connected") == []


async def test_offer_without_target_reaches_other_members():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 4)
    outsider_ids, outsider_sockets = connect(server, 1)
    await join_all(server, ids)
    await join_all(server, outsider_ids, room_id="elsewhere")

    await server.relay_offer(ids[0], OFFER, "r1")

    assert sockets[0].events("offer") == []
    for socket in sockets[1:]:
        assert socket.events("offer") == [[OFFER, ids[0]]]
    assert outsider_sockets[0].events("offer") == []


async def test_offer_with_target_reaches_only_that_member():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 3)
    await join_all(server, ids)

    await server.relay_offer(ids[0], OFFER, "r1", ids[2])

    assert sockets[1].events("offer") == []
    assert sockets[2].events("offer") == [[OFFER, ids[0]]]


async def test_answer_and_candidate_are_point_to_point():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 3)
    await join_all(server, ids)
    candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    await server.relay_answer(ids[1], ANSWER, ids[0])
    await server.relay_candidate(ids[1], candidate, ids[0])

    assert sockets[0].events("answer") == [[ANSWER, ids[1]]]
    assert sockets[0].events("ice-candidate") == [[candidate, ids[1]]]
    assert sockets[2].events("answer") == []
    assert sockets[2].events("ice-candidate") == []


async def test_unknown_target_is_dropped_silently():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)
    await join_all(server, ids)

    await server.relay_answer(ids[0], ANSWER, "gone")
    await server.relay_candidate(ids[0], {"candidate": ""}, "gone")
    await server.relay_offer(ids[0], OFFER, "r1", "gone")

    assert server.routing_misses == 3
    assert sockets[0].events("error") == []
    assert sockets[1].events("offer") == []


async def test_closed_socket_is_a_routing_miss():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)
    await join_all(server, ids)
    sockets[1].closed = True

    await server.relay_answer(ids[0], ANSWER, ids[1])

    assert server.routing_misses == 1


async def test_disconnect_broadcasts_globally_by_default():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)
    other_ids, other_sockets = connect(server, 1)
    await join_all(server, ids)
    await join_all(server, other_ids, room_id="r2")

    await server.disconnect(ids[0])

    assert sockets[1].events("user-disconnected") == [[ids[0]]]
    assert other_sockets[0].events("user-disconnected") == [[ids[0]]]
    assert sockets[0].events("user-disconnected") == []
    assert server.get_room("r1")["members"] == [ids[1]]


async def test_disconnect_room_scope_only_notifies_room():
    server = SignalingServer("127.0.0.1", 0, disconnect_scope="room")
    ids, sockets = connect(server, 2)
    other_ids, other_sockets = connect(server, 1)
    await join_all(server, ids)
    await join_all(server, other_ids, room_id="r2")

    await server.disconnect(ids[0])

    assert sockets[1].events("user-disconnected") == [[ids[0]]]
    assert other_sockets[0].events("user-disconnected") == []


async def test_empty_room_is_deleted():
    server = SignalingServer("127.0.0.1", 0)
    ids, _ = connect(server, 1)
    await join_all(server, ids)

    await server.disconnect(ids[0])

    assert server.get_room("r1") is None
    assert server.get_rooms() == []
    assert server.get_participant_count() == 0


async def test_joining_another_room_leaves_the_previous_one():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)
    await join_all(server, ids)

    await server.join(ids[0], "r2")

    assert server.get_room("r1")["members"] == [ids[1]]
    assert server.get_room("r2")["members"] == [ids[0]]
    assert server.participants[ids[0]].room_id == "r2"


async def test_rejoining_same_room_rebroadcasts():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)
    await join_all(server, ids)

    await server.join(ids[1], "r1")

    assert sockets[0].events("user-connected") == [[ids[1]], [ids[1]]]
    assert server.get_participant_count("r1") == 2


async def test_handle_event_routes_wire_events():
    server = SignalingServer("127.0.0.1", 0)
    ids, sockets = connect(server, 2)

    await server.handle_event(ids[0], "join-room", ["r1"])
    await server.handle_event(ids[1], "join-room", ["r1"])
    await server.handle_event(ids[1], "offer", [OFFER, "r1"])
    await server.handle_event(ids[0], "answer", [ANSWER, ids[1]])

    assert sockets[0].events("offer") == [[OFFER, ids[1]]]
    assert sockets[1].events("answer") == [[ANSWER, ids[0]]]


async def test_handle_event_rejects_unknown_and_incomplete_events():
    server = SignalingServer("127.0.0.1", 0)
    ids, _ = connect(server, 1)

    with pytest.raises(SignalingError):
        await server.handle_event(ids[0], "bogus", [])
    with pytest.raises(SignalingError):
        await server.handle_event(ids[0], "answer", [ANSWER])
    with pytest.raises(SignalingError):
        await server.handle_event(ids[0], "join-room", [""])


@pytest.mark.parametrize("event, args", [
    ("join-room", [["r1"]]),
    ("offer", [OFFER, {"room": "r1"}]),
    ("offer", [OFFER, "r1", ["peer"]]),
    ("answer", [ANSWER, {"id": "peer"}]),
    ("ice-candidate", [{"candidate": ""}, ["peer"]]),
])
async def test_handle_event_rejects_non_string_ids(event, args):
    server = SignalingServer("127.0.0.1", 0)
    ids, _ = connect(server, 1)

    with pytest.raises(SignalingError, match="must be a string"):
        await server.handle_event(ids[0], event, args)


def test_invalid_disconnect_scope_is_rejected():
    with pytest.raises(SignalingError):
        SignalingServer("127.0.0.1", 0, disconnect_scope="everyone")


async def test_get_stats_counts_relayed_messages():
    server = SignalingServer("127.0.0.1", 0)
    ids, _ = connect(server, 2)
    await join_all(server, ids)

    stats = server.get_stats()

    assert stats["participants"] == 2
    assert stats["rooms"] == 1
    assert stats["messages_relayed"] == 1
    assert stats["disconnect_scope"] == "global"
