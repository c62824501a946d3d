import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.services.reply_service import ReplyEngine
from app.services.session_manager import SessionCreationError, SessionManager, phone_from_jid
from app.services.state_machine import SessionStatus
from app.transport.base import ConnectionUpdate, DisconnectReason, TransportEvent

CUSTOMER_JID = "18095550000@s.whatsapp.net"


def _inbound(text="Hola", remote_jid=CUSTOMER_JID, from_me=False):
    return {
        "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": "3EB0"},
        "message": {"conversation": text},
        "pushName": "Cliente",
    }


async def _connected(manager, transport, tenant_id="t1"):
    await manager.ensure_session(tenant_id)
    connection = transport.connections_for(tenant_id)[-1]
    await connection.emit_open()
    return connection


class TestEnsureSession:
    def test_creates_connecting_session(self, manager, transport, store):
        info = asyncio.run(manager.ensure_session("t1"))

        assert info.status == SessionStatus.CONNECTING
        assert info.qr is None
        assert len(transport.connections) == 1
        assert transport.connections[0].started is True
        assert store.sessions["t1"]["status"] == "connecting"

    def test_concurrent_calls_create_one_connection(self, manager, transport):
        async def scenario():
            return await asyncio.gather(*(manager.ensure_session("t1") for _ in range(5)))

        results = asyncio.run(scenario())

        assert len(transport.connections) == 1
        assert all(info.status == SessionStatus.CONNECTING for info in results)
        assert manager.session_count() == 1

    def test_existing_session_is_reused(self, manager, transport):
        async def scenario():
            await manager.ensure_session("t1")
            await transport.connections[0].emit_qr("QR-1")
            return await manager.ensure_session("t1")

        info = asyncio.run(scenario())

        assert len(transport.connections) == 1
        assert info.status == SessionStatus.AWAITING_SCAN
        assert info.qr == "QR-1"

    def test_tenants_are_independent(self, manager, transport):
        async def scenario():
            await manager.ensure_session("t1")
            await manager.ensure_session("t2")

        asyncio.run(scenario())

        assert [c.tenant_id for c in transport.connections] == ["t1", "t2"]
        assert manager.session_count() == 2

    def test_stored_credentials_are_handed_to_transport(self, manager, transport, store):
        store.auth_states["t1"] = {"creds": {"registered": True}, "keys": {}}

        asyncio.run(manager.ensure_session("t1"))

        assert transport.connections[0].credentials.creds == {"registered": True}

    def test_creation_lock_is_released(self, manager):
        async def scenario():
            await asyncio.gather(*(manager.ensure_session(tenant) for tenant in ("t1", "t1", "t2")))

        asyncio.run(scenario())

        assert manager._creation_locks == {}
        assert manager._creation_pending == {}

    def test_disconnect_while_starting(self, manager, transport, store):
        async def scenario():
            task = asyncio.create_task(manager.ensure_session("t1"))
            await asyncio.sleep(0)
            await manager.disconnect("t1")
            with pytest.raises(SessionCreationError):
                await task

        asyncio.run(scenario())

        connection = transport.connections[0]
        assert connection.started is True
        assert connection.closed is True
        assert manager.session_count() == 0
        assert manager.get_live_session("t1") is None
        assert store.sessions["t1"]["status"] == "disconnected"

    def test_empty_tenant_id_is_rejected(self, manager):
        with pytest.raises(ValueError):
            asyncio.run(manager.ensure_session(""))

    def test_start_failure_leaves_no_session(self, manager, transport, store):
        transport.fail_start = True

        with pytest.raises(SessionCreationError):
            asyncio.run(manager.ensure_session("t1"))

        assert manager.session_count() == 0
        assert store.sessions["t1"]["status"] == "disconnected"
        assert store.sessions["t1"]["last_error"] == "bridge unreachable"

    def test_transport_refusal_raises(self, manager, transport):
        transport.refuse = True

        with pytest.raises(SessionCreationError):
            asyncio.run(manager.ensure_session("t1"))

        assert manager.session_count() == 0


class TestConnectionEvents:
    def test_challenge_moves_to_awaiting_scan(self, manager, transport, store):
        async def scenario():
            await manager.ensure_session("t1")
            await transport.connections[0].emit_qr("QR-1")
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert info.status == SessionStatus.AWAITING_SCAN
        assert info.qr == "QR-1"
        assert store.sessions["t1"]["qr_data"] == "QR-1"

    def test_refreshed_challenge_replaces_qr(self, manager, transport):
        async def scenario():
            await manager.ensure_session("t1")
            await transport.connections[0].emit_qr("QR-1")
            await transport.connections[0].emit_qr("QR-2")
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert info.status == SessionStatus.AWAITING_SCAN
        assert info.qr == "QR-2"

    def test_challenge_printed_when_enabled(self, transport, store, llm):
        manager = SessionManager(transport, store, ReplyEngine(store, llm), print_qr_in_terminal=True)

        async def scenario():
            await manager.ensure_session("t1")
            await transport.connections[0].emit_qr("QR-1")

        with patch("app.services.session_manager.print_qr") as mock_print:
            asyncio.run(scenario())

        mock_print.assert_called_once_with("QR-1")

    def test_open_records_phone(self, manager, transport, store):
        async def scenario():
            await manager.ensure_session("t1")
            await transport.connections[0].emit_qr("QR-1")
            await transport.connections[0].emit_open("18095551234:12@s.whatsapp.net")
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert info.status == SessionStatus.CONNECTED
        assert info.phone == "18095551234"
        assert info.qr is None
        assert info.last_connected_at is not None
        assert store.sessions["t1"]["status"] == "connected"
        assert store.sessions["t1"]["phone_number"] == "18095551234"
        assert store.tenant_updates[-1] == ("t1", {"connected": True, "phone": "whatsapp:+18095551234"})
        assert manager.is_connected("t1") is True

    def test_transient_close_reconnects(self, manager, transport, store):
        async def scenario():
            first = await _connected(manager, transport)
            await first.emit_close(DisconnectReason.CONNECTION_LOST, "stream errored")
            return first

        first = asyncio.run(scenario())

        connections = transport.connections_for("t1")
        assert len(connections) == 2
        assert manager.get_live_session("t1").connection is connections[1]
        assert manager.session_count() == 1
        assert first.logged_out is False
        assert store.sessions["t1"]["status"] == "connecting"

    def test_transient_close_keeps_credentials(self, manager, transport, store):
        async def scenario():
            first = await _connected(manager, transport)
            await first.emit_creds({"registered": True})
            await first.emit_close(DisconnectReason.RESTART_REQUIRED)

        asyncio.run(scenario())

        assert transport.connections[1].credentials.creds == {"registered": True}

    def test_logged_out_close_wipes_session(self, manager, transport, store):
        async def scenario():
            first = await _connected(manager, transport)
            await first.emit_creds({"registered": True})
            await first.emit_close(DisconnectReason.LOGGED_OUT, "logged out from phone")
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert len(transport.connections) == 1
        assert manager.session_count() == 0
        assert info.status == SessionStatus.DISCONNECTED
        assert "t1" not in store.auth_states
        assert store.sessions["t1"]["status"] == "disconnected"
        assert store.sessions["t1"]["last_error"] == "logged out from phone"
        assert store.tenant_updates[-1] == ("t1", {"connected": False, "phone": None})

    def test_failed_reconnect_alerts(self, manager, transport, store):
        async def scenario():
            first = await _connected(manager, transport)
            transport.fail_start = True
            await first.emit_close(DisconnectReason.CONNECTION_LOST)

        with patch("app.services.alert_service.alert_critical", new_callable=AsyncMock) as mock_alert:
            asyncio.run(scenario())

        mock_alert.assert_awaited_once()
        assert manager.session_count() == 0
        assert store.sessions["t1"]["status"] == "disconnected"
        assert store.tenant_updates[-1] == ("t1", {"connected": False, "phone": None})

    def test_events_from_replaced_connection_are_ignored(self, manager, transport):
        async def scenario():
            first = await _connected(manager, transport)
            await first.emit_close(DisconnectReason.CONNECTION_LOST)
            await first.emit_qr("STALE")
            await first.emit_messages([_inbound()])
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert info.status == SessionStatus.CONNECTING
        assert info.qr is None
        assert transport.connections[0].sent == []
        assert transport.connections[1].sent == []

    def test_connecting_after_scan_clears_qr(self, manager, transport):
        async def scenario():
            await manager.ensure_session("t1")
            connection = transport.connections[0]
            await connection.emit_qr("QR-1")
            await connection.dispatch(TransportEvent.CONNECTION_UPDATE, ConnectionUpdate(connection="connecting"))
            return await manager.get_session_info("t1")

        info = asyncio.run(scenario())

        assert info.status == SessionStatus.CONNECTING
        assert info.qr is None


class TestCredentials:
    def test_updates_are_merged_and_persisted(self, manager, transport, store):
        async def scenario():
            await manager.ensure_session("t1")
            connection = transport.connections[0]
            await connection.emit_creds({"registered": False}, {"pre-key": {"1": b"\x01", "2": b"\x02"}})
            await connection.emit_creds({"registered": True}, {"pre-key": {"1": b"\x09"}})

        asyncio.run(scenario())

        assert store.auth_states["t1"] == {
            "creds": {"registered": True},
            "keys": {
                "pre-key": {
                    "1": {"type": "Buffer", "data": "CQ=="},
                    "2": {"type": "Buffer", "data": "Ag=="},
                }
            },
        }


class TestInboundMessages:
    def test_reply_is_sent_to_customer(self, manager, transport, llm):
        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_messages([_inbound("Hola, abren hoy?")])
            return connection

        connection = asyncio.run(scenario())

        assert connection.sent == [(CUSTOMER_JID, "Hola, ¿en qué te puedo ayudar?")]
        assert llm.generate.call_args.args[0][1]["content"] == "Hola, abren hoy?"

    def test_pricing_question_uses_tenant_pitch(self, manager, transport, store, llm):
        store.templates[("t1", "pricing_pitch")] = "Planes desde $20 al mes."

        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_messages([_inbound("cuál es el precio?")])
            return connection

        connection = asyncio.run(scenario())

        assert connection.sent == [(CUSTOMER_JID, "Planes desde $20 al mes.")]
        llm.generate.assert_not_called()

    def test_group_broadcast_and_own_messages_are_ignored(self, manager, transport, llm):
        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_messages(
                [
                    _inbound(remote_jid="120363025@g.us"),
                    _inbound(remote_jid="status@broadcast"),
                    _inbound(from_me=True),
                    {"key": {"remoteJid": CUSTOMER_JID}, "message": {"imageMessage": {}}},
                ]
            )
            return connection

        connection = asyncio.run(scenario())

        assert connection.sent == []
        llm.generate.assert_not_called()

    def test_ai_failure_sends_nothing(self, manager, transport, llm):
        llm.generate.side_effect = RuntimeError("timeout")

        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_messages([_inbound()])
            return connection

        connection = asyncio.run(scenario())

        assert connection.sent == []

    def test_one_bad_message_does_not_stop_the_batch(self, manager, transport):
        async def scenario():
            connection = await _connected(manager, transport)
            connection.fail_send = True
            await connection.emit_messages([_inbound("uno")])
            connection.fail_send = False
            await connection.emit_messages([_inbound("dos"), _inbound("tres")])
            return connection

        connection = asyncio.run(scenario())

        assert len(connection.sent) == 2


class TestDisconnect:
    def test_logs_out_and_wipes_credentials(self, manager, transport, store):
        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_creds({"registered": True})
            await manager.disconnect("t1")
            return connection

        connection = asyncio.run(scenario())

        assert connection.logged_out is True
        assert connection.closed is True
        assert manager.session_count() == 0
        assert "t1" not in store.auth_states
        assert store.sessions["t1"]["status"] == "disconnected"
        assert store.sessions["t1"]["phone_number"] is None
        assert store.tenant_updates[-1] == ("t1", {"connected": False, "phone": None})

    def test_logged_out_event_after_disconnect_is_ignored(self, manager, transport):
        async def scenario():
            connection = await _connected(manager, transport)
            await manager.disconnect("t1")
            await connection.emit_close(DisconnectReason.LOGGED_OUT)

        asyncio.run(scenario())

        assert len(transport.connections) == 1
        assert manager.session_count() == 0

    def test_without_session_still_persists(self, manager, store):
        asyncio.run(manager.disconnect("ghost"))

        assert store.sessions["ghost"]["status"] == "disconnected"
        assert store.tenant_updates == [("ghost", {"connected": False, "phone": None})]

    def test_logout_failure_is_tolerated(self, manager, transport):
        async def scenario():
            connection = await _connected(manager, transport)
            connection.logout = AsyncMock(side_effect=RuntimeError("already gone"))
            await manager.disconnect("t1")
            return connection

        connection = asyncio.run(scenario())

        assert connection.closed is True
        assert manager.session_count() == 0


class TestSessionInfo:
    def test_unknown_tenant_is_disconnected(self, manager):
        info = asyncio.run(manager.get_session_info("nobody"))
        assert info.status == SessionStatus.DISCONNECTED
        assert info.qr is None

    def test_reads_persisted_row_without_connecting(self, manager, transport, store):
        store.sessions["t1"] = {"status": "connected", "phone_number": "18095551234"}

        info = asyncio.run(manager.get_session_info("t1"))

        assert info.status == SessionStatus.CONNECTED
        assert info.phone == "18095551234"
        assert transport.connections == []

    def test_legacy_qrcode_status(self, manager, store):
        store.sessions["t1"] = {"status": "qrcode", "qr_data": "QR-OLD"}

        info = asyncio.run(manager.get_session_info("t1"))

        assert info.status == SessionStatus.AWAITING_SCAN
        assert info.qr == "QR-OLD"

    def test_unrecognized_status_is_disconnected(self, manager, store):
        store.sessions["t1"] = {"status": "weird"}

        info = asyncio.run(manager.get_session_info("t1"))

        assert info.status == SessionStatus.DISCONNECTED

    def test_store_error_is_disconnected(self, manager, store):
        store.get_session = AsyncMock(side_effect=RuntimeError("db down"))

        info = asyncio.run(manager.get_session_info("t1"))

        assert info.status == SessionStatus.DISCONNECTED


class TestCloseAll:
    def test_closes_connections_and_keeps_credentials(self, manager, transport, store):
        async def scenario():
            connection = await _connected(manager, transport)
            await connection.emit_creds({"registered": True})
            await manager.close_all()
            return connection

        connection = asyncio.run(scenario())

        assert connection.closed is True
        assert connection.logged_out is False
        assert manager.session_count() == 0
        assert store.auth_states["t1"]["creds"] == {"registered": True}


class TestSendText:
    def test_requires_connected_session(self, manager):
        with pytest.raises(RuntimeError):
            asyncio.run(manager.send_text("t1", CUSTOMER_JID, "Hola"))


class TestPhoneFromJid:
    def test_strips_device_and_server(self):
        assert phone_from_jid("18095551234:12@s.whatsapp.net") == "18095551234"

    def test_none(self):
        assert phone_from_jid(None) is None
