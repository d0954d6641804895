from datetime import timedelta

import pytest

from apps.whatsapp_gateway.dashboard import compute_dashboard_payload
from packages.core.utils.clock import utcnow

from conftest import USER_ID


def test_delivery_rate_from_daily_counters():
    payload = compute_dashboard_payload(
        "online",
        {"messages_sent": 7, "messages_failed": 3},
        [],
        live_uptime_seconds=0,
        seconds_today=3600,
    )

    assert payload["deliveryRate"] == pytest.approx(70.0)
    assert payload["messagesSent"] == 7
    assert payload["messagesFailed"] == 3
    assert payload["connections"] == 1


def test_defaults_without_daily_row():
    payload = compute_dashboard_payload("offline", {}, [], live_uptime_seconds=0, seconds_today=3600)

    assert payload["deliveryRate"] == 100
    assert payload["avgResponseTime"] == 0
    assert payload["uptimePercentage"] == 0
    assert payload["messagesPending"] == 0
    assert payload["connections"] == 0


def test_average_response_time_in_seconds():
    payload = compute_dashboard_payload(
        "online",
        {"total_response_time": 3000.0, "response_count": 2},
        [],
        live_uptime_seconds=0,
        seconds_today=3600,
    )
    assert payload["avgResponseTime"] == pytest.approx(1.5)


def test_uptime_includes_live_session_and_is_capped():
    half = compute_dashboard_payload("online", {"total_uptime": 900}, [], live_uptime_seconds=900, seconds_today=3600)
    over = compute_dashboard_payload("online", {"total_uptime": 5000}, [], live_uptime_seconds=0, seconds_today=1000)
    midnight = compute_dashboard_payload("online", {}, [], live_uptime_seconds=0, seconds_today=0)

    assert half["uptimePercentage"] == pytest.approx(50.0)
    assert over["uptimePercentage"] == 100
    assert midnight["uptimePercentage"] == 100


async def test_no_emit_without_subscribers(ctx):
    sent = []

    async def fake_emit(*args):
        sent.append(args)

    ctx.connections.emit_to_user = fake_emit
    await ctx.dashboard.emit_dashboard_update(USER_ID)

    assert sent == []


async def test_snapshot_reflects_registry_and_activity(ctx, online_socket, dashboard_ws):
    ctx.registry.connection_timestamps[USER_ID] = utcnow() - timedelta(seconds=5)
    await ctx.recorder.log_activity(USER_ID, "first")
    await ctx.recorder.log_activity(USER_ID, "second")
    await ctx.recorder.update_daily_stats(USER_ID, "messages_sent", 4)

    await ctx.dashboard.emit_dashboard_update(USER_ID)

    (frame,) = dashboard_ws.events("dashboard_update")
    data = frame["data"]
    assert data["botStatus"] == "online"
    assert data["messagesSent"] == 4
    assert [item["message"] for item in data["recentActivity"]] == ["second", "first"]
    assert data["uptimePercentage"] > 0


async def test_bot_status_qr_ready_and_offline(ctx):
    assert ctx.dashboard.bot_status(USER_ID) == "offline"

    ctx.registry.qr_codes[USER_ID] = "qr"
    assert ctx.dashboard.bot_status(USER_ID) == "qr_ready"
