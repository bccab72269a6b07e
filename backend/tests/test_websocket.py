def test_alert_stream_protocol(client):
    with client.websocket_connect("/ws/alerts") as ws:
        assert ws.receive_json()["type"] == "connected"

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"

        ws.send_json({"type": "subscribe", "payload": {"filter": {"risk_levels": ["critical"]}}})
        subscribed = ws.receive_json()
        assert subscribed["type"] == "subscribed"
        assert subscribed["payload"]["filter"]["risk_levels"] == ["critical"]

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "dance"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert "dance" in error["payload"]["message"]


def test_health_counts_stream_connections(client):
    with client.websocket_connect("/ws/alerts") as ws:
        ws.receive_json()
        assert client.get("/api/health").json()["data"]["websocket_connections"] == 1


def test_malformed_subscription_keeps_connection_open(client):
    with client.websocket_connect("/ws/alerts") as ws:
        ws.receive_json()

        for payload in ([1, 2], {"filter": "critical"}, {"filter": {"risk_levels": "high"}}):
            ws.send_json({"type": "subscribe", "payload": payload})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["payload"]["kind"] == "invalid_request"

        ws.send_json({"type": "subscribe", "payload": {"filter": None}})
        subscribed = ws.receive_json()
        assert subscribed["type"] == "subscribed"
        assert subscribed["payload"]["filter"]["risk_levels"] == []

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
