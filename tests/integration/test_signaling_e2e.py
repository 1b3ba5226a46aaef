"""End-to-End signaling flow integration tests.

Tests the complete flow over real sockets:
1. Start signaling server (WebSocket + health endpoints)
2. Connect patient and doctor clients
3. Join the appointment room by meeting token and by appointment id
4. Start the call, negotiate through the relay, end the call
5. Reconnect during a live call
6. Handshake authentication
"""

import aiohttp
import pytest
import websockets
from websockets.exceptions import InvalidStatus

from src.signaling.server import SignalingServer
from tests.helpers.signaling_fakes import (
    APPOINTMENT_ID,
    DOCTOR_ID,
    PATIENT_ID,
    ROOM_TOKEN,
)
from tests.integration.conftest import (
    SignalingClient,
    connect_client,
    make_token,
    ws_url,
)

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_call_flow(
    signaling_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    """Patient and doctor join, negotiate through the relay, and end the call."""
    patient = await connect_client(ws_url(signaling_server))
    doctor = await connect_client(ws_url(signaling_server))
    clients.extend([patient, doctor])

    await patient.emit(
        "join-room", roomId=ROOM_TOKEN, userId=PATIENT_ID, userName="Pat", userRole="patient"
    )
    state = await patient.wait_for("call-state")
    assert state == {"type": "call-state", "isActive": False, "startedBy": None}

    await doctor.emit(
        "join-room",
        roomId=APPOINTMENT_ID,
        userId=DOCTOR_ID,
        userName="Dr. Doe",
        userRole="doctor",
    )
    await doctor.wait_for("call-state")

    await doctor.emit("start-call", roomId=ROOM_TOKEN)
    for client in (patient, doctor):
        started = await client.wait_for("call-started")
        assert started["startedBy"] == DOCTOR_ID
        roster = await client.wait_for("room-users")
        assert [u["socketId"] for u in roster["users"]] == [patient.socket_id, doctor.socket_id]

    offer = {"type": "offer", "sdp": "v=0\r\n"}
    await doctor.emit("offer", target=patient.socket_id, offer=offer)
    relayed = await patient.wait_for("offer")
    assert relayed["offer"] == offer
    assert relayed["sender"] == doctor.socket_id
    assert relayed["senderId"] == DOCTOR_ID

    await patient.emit("answer", target=doctor.socket_id, answer={"type": "answer", "sdp": "v=0"})
    answer = await doctor.wait_for("answer")
    assert answer["sender"] == patient.socket_id

    await patient.emit("ice-candidate", target=doctor.socket_id, candidate={"candidate": "c"})
    assert (await doctor.wait_for("ice-candidate"))["candidate"] == {"candidate": "c"}

    await patient.emit("user-audio-status", isMuted=True)
    status = await doctor.wait_for("user-audio-status")
    assert status["userId"] == PATIENT_ID
    assert status["isMuted"] is True

    await doctor.emit("end-call", roomId=ROOM_TOKEN)
    ended = await patient.wait_for("call-ended")
    assert ended["endedBy"] == DOCTOR_ID
    assert not signaling_server.registry.get_call_state(APPOINTMENT_ID).is_active


@pytest.mark.asyncio
async def test_patient_cannot_start_call(
    signaling_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    patient = await connect_client(ws_url(signaling_server))
    clients.append(patient)

    await patient.emit("join-room", roomId=ROOM_TOKEN, userId=PATIENT_ID, userRole="patient")
    await patient.wait_for("call-state")

    await patient.emit("start-call", roomId=ROOM_TOKEN)
    error = await patient.wait_for("error")

    assert error["code"] == "FORBIDDEN"
    assert not signaling_server.registry.get_call_state(APPOINTMENT_ID).is_active


@pytest.mark.asyncio
async def test_doctor_reconnects_during_live_call(
    signaling_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    """A doctor dropping out does not end the call; rejoining sees it live."""
    patient = await connect_client(ws_url(signaling_server))
    doctor = await connect_client(ws_url(signaling_server))
    clients.append(patient)

    await patient.emit("join-room", roomId=ROOM_TOKEN, userId=PATIENT_ID, userRole="patient")
    await patient.wait_for("call-state")
    await doctor.emit("join-room", roomId=ROOM_TOKEN, userId=DOCTOR_ID, userRole="doctor")
    await doctor.wait_for("call-state")
    await doctor.emit("start-call", roomId=ROOM_TOKEN)
    await patient.wait_for("room-users")

    await doctor.close()
    left = await patient.wait_for("user-left")
    assert left["socketId"] == doctor.socket_id
    assert signaling_server.registry.get_call_state(APPOINTMENT_ID).is_active

    rejoined = await connect_client(ws_url(signaling_server))
    clients.append(rejoined)
    await rejoined.emit("join-room", roomId=ROOM_TOKEN, userId=DOCTOR_ID, userRole="doctor")
    state = await rejoined.wait_for("call-state")
    assert state == {"type": "call-state", "isActive": True, "startedBy": DOCTOR_ID}
    roster = await rejoined.wait_for("room-users")
    assert [u["socketId"] for u in roster["users"]] == [patient.socket_id]

    joined = await patient.wait_for("user-joined")
    assert joined["socketId"] == rejoined.socket_id


@pytest.mark.asyncio
async def test_malformed_frames_keep_connection_open(
    signaling_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    client = await connect_client(ws_url(signaling_server))
    clients.append(client)

    await client.send_raw("{not json")
    assert (await client.wait_for("error"))["code"] == "INVALID_MESSAGE"

    await client.emit("join-room", roomId="room-does-not-exist", userId=PATIENT_ID)
    error = await client.wait_for("error")
    assert error["code"] == "NOT_FOUND"
    assert "room-does-not-exist" in error["message"]

    await client.emit("join-room", roomId=ROOM_TOKEN, userId=PATIENT_ID, userRole="patient")
    assert (await client.wait_for("call-state"))["isActive"] is False


@pytest.mark.asyncio
async def test_health_endpoints(
    signaling_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    client = await connect_client(ws_url(signaling_server))
    clients.append(client)
    await client.emit("join-room", roomId=ROOM_TOKEN, userId=PATIENT_ID, userRole="patient")
    await client.wait_for("call-state")

    base = f"http://127.0.0.1:{signaling_server.config.health.port}"
    async with aiohttp.ClientSession() as session:
        async with session.get(f"{base}/health") as response:
            assert response.status == 200
            body = await response.json()
        async with session.get(f"{base}/rooms") as response:
            rooms = await response.json()

    assert body["status"] == "healthy"
    assert body["rooms"]["participants"] == 1
    assert rooms["rooms"][0]["room_key"] == APPOINTMENT_ID


@pytest.mark.asyncio
async def test_handshake_requires_token(authenticated_server: SignalingServer) -> None:
    with pytest.raises(InvalidStatus) as exc_info:
        await websockets.connect(ws_url(authenticated_server))
    assert exc_info.value.response.status_code == 401

    with pytest.raises(InvalidStatus):
        await websockets.connect(ws_url(authenticated_server, token="not-a-jwt"))


@pytest.mark.asyncio
async def test_token_identity_is_used(
    authenticated_server: SignalingServer, clients: list[SignalingClient]
) -> None:
    """join-room without userId falls back to the token's identity and role."""
    doctor = await connect_client(ws_url(authenticated_server, make_token(DOCTOR_ID, "doctor")))
    clients.append(doctor)

    await doctor.emit("join-room", roomId=ROOM_TOKEN)
    await doctor.wait_for("call-state")
    await doctor.emit("start-call", roomId=ROOM_TOKEN)
    started = await doctor.wait_for("call-started")

    assert started["startedBy"] == DOCTOR_ID
    handle = authenticated_server.registry.list_participants(APPOINTMENT_ID)[0]
    assert handle.user_id == DOCTOR_ID
