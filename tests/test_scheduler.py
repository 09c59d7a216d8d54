from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from adwatch.errors import SelectorNotFound
from adwatch.monitor import MonitorResult
from adwatch.notifications.gateway import NotificationGateway
from adwatch.scheduler import SiteScheduler, latch_key
from adwatch.state import LatchStore
from fakes import FakeTransport

MONITOR = {
    "type": "monitor",
    "id": "board",
    "list_url": "https://board.example.com/list",
    "ad_link_selector": "a.ad",
    "phone_selector": ".phone",
}

BUMP = {
    "type": "bump",
    "id": "house",
    "login": {"url": "https://house.example.com/login", "username_selector": "#u", "password_selector": "#p"},
    "target_urls": ["https://house.example.com/my"],
}


class Runs:
    """Queue of scripted outcomes; exceptions are raised."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, site, pool, *args):
        self.calls += 1
        value = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(value, Exception):
            raise value
        return value


def _scheduler(tmp_path: Path, *, monitor=None, bump=None) -> tuple[SiteScheduler, FakeTransport, LatchStore]:
    transport = FakeTransport()
    latches = LatchStore(tmp_path / "state.json")
    scheduler = SiteScheduler(
        NotificationGateway(transport),
        latches,
        pool=None,
        phones=["050 123 45 67"],
        monitor_check=monitor or Runs(MonitorResult(ok=True, found_phone="0501234567")),
        bump_run=bump or Runs(1),
    )
    return scheduler, transport, latches


@pytest.mark.asyncio
async def test_monitor_held_then_lost(tmp_path: Path) -> None:
    monitor = Runs(MonitorResult(ok=True, found_phone="0501234567"), MonitorResult(ok=False, found_phone="0999999999"))
    scheduler, transport, _ = _scheduler(tmp_path, monitor=monitor)

    await scheduler.tick(MONITOR, "board")
    await scheduler.tick(MONITOR, "board")

    assert "Top position held" in transport.sent[0]
    assert "Top position lost" in transport.sent[1]
    assert "0999999999" in transport.sent[1]
    # the held message was retracted by the alert
    assert transport.deleted == [101]


@pytest.mark.asyncio
async def test_selector_alert_latches_until_recovery(tmp_path: Path) -> None:
    failure = SelectorNotFound("board", "a.ad", "list")
    monitor = Runs(failure, failure, MonitorResult(ok=True, found_phone="0501234567"), failure)
    scheduler, transport, latches = _scheduler(tmp_path, monitor=monitor)

    await scheduler.tick(MONITOR, "board")
    await scheduler.tick(MONITOR, "board")
    assert len(transport.sent) == 1
    assert "stage=list" in transport.sent[0]
    assert latches.is_set(latch_key("board", "selector"))

    await scheduler.tick(MONITOR, "board")
    assert any("Selectors work again" in text for text in transport.sent)
    assert not latches.is_set(latch_key("board", "selector"))

    scheduler.gateway.reset_all()
    await scheduler.tick(MONITOR, "board")
    assert sum("Selector not found" in text for text in transport.sent) == 2


@pytest.mark.asyncio
async def test_selector_latch_survives_restart(tmp_path: Path) -> None:
    failure = SelectorNotFound("board", "a.ad", "list")
    first, transport_a, _ = _scheduler(tmp_path, monitor=Runs(failure))
    await first.tick(MONITOR, "board")

    second, transport_b, _ = _scheduler(tmp_path, monitor=Runs(failure))
    await second.tick(MONITOR, "board")

    assert len(transport_a.sent) == 1
    assert transport_b.sent == []


@pytest.mark.asyncio
async def test_invalid_configuration_alerts_once_and_skips_run(tmp_path: Path) -> None:
    monitor = Runs(MonitorResult(ok=True, found_phone=None))
    scheduler, transport, latches = _scheduler(tmp_path, monitor=monitor)
    broken = {"type": "monitor", "id": "board", "list_url": "https://board.example.com/list"}

    await scheduler.tick(broken, "board")
    await scheduler.tick(broken, "board")

    assert monitor.calls == 0
    assert len(transport.sent) == 1
    assert "Invalid configuration for 'board'" in transport.sent[0]
    assert "phone_selector" in transport.sent[0]

    await scheduler.tick(MONITOR, "board")
    assert monitor.calls == 1
    assert not latches.is_set(latch_key("board", "badcfg"))


@pytest.mark.asyncio
async def test_unknown_action_function_is_reported_as_invalid(tmp_path: Path) -> None:
    bump = Runs(3)
    scheduler, transport, _ = _scheduler(tmp_path, bump=bump)

    await scheduler.tick({**BUMP, "action_function": "teleport"}, "house")

    assert bump.calls == 0
    assert "teleport" in transport.sent[0]


@pytest.mark.asyncio
async def test_unexpected_error_alerts_once_per_episode(tmp_path: Path) -> None:
    bump = Runs(RuntimeError("browser crashed"), RuntimeError("browser crashed"), 2, RuntimeError("again"))
    scheduler, transport, _ = _scheduler(tmp_path, bump=bump)

    await scheduler.tick(BUMP, "house")
    await scheduler.tick(BUMP, "house")
    errors = [t for t in transport.sent if "Error on 'house'" in t]
    assert len(errors) == 1

    await scheduler.tick(BUMP, "house")
    await scheduler.tick(BUMP, "house")
    errors = [t for t in transport.sent if "Error on 'house'" in t]
    assert len(errors) == 2


@pytest.mark.asyncio
async def test_every_bump_run_reports_its_count(tmp_path: Path) -> None:
    scheduler, transport, _ = _scheduler(tmp_path, bump=Runs(3))

    await scheduler.tick(BUMP, "house")
    await scheduler.tick(BUMP, "house")

    assert transport.sent == ["[house] bump 🔁 house: renewed 3 listing(s)."] * 2


@pytest.mark.asyncio
async def test_bump_with_nothing_pressed_alerts(tmp_path: Path) -> None:
    scheduler, transport, _ = _scheduler(tmp_path, bump=Runs(0))

    await scheduler.tick(BUMP, "house")
    await scheduler.tick(BUMP, "house")

    assert len(transport.sent) == 1
    assert "no button could be pressed" in transport.sent[0]


@pytest.mark.asyncio
async def test_run_once_skips_disabled_and_keeps_going(tmp_path: Path) -> None:
    monitor = Runs(RuntimeError("boom"))
    bump = Runs(1)
    scheduler, transport, _ = _scheduler(tmp_path, monitor=monitor, bump=bump)

    await scheduler.run_once([MONITOR, BUMP, {**BUMP, "id": "off", "disabled": True}])

    assert monitor.calls == 1
    assert bump.calls == 1
    assert len(transport.sent) == 2


def test_entries_rename_duplicates_and_skip_disabled(tmp_path: Path) -> None:
    scheduler, _, _ = _scheduler(tmp_path)

    entries = scheduler._entries([MONITOR, MONITOR, {"disabled": True}, {"type": "bump"}])

    assert [key for key, _ in entries] == ["board", "board#1", "site#3"]


@pytest.mark.asyncio
async def test_start_schedules_with_floored_period(tmp_path: Path) -> None:
    scheduler, _, _ = _scheduler(tmp_path)

    await scheduler.start([{**MONITOR, "period_seconds": 5}, {**BUMP, "period_seconds": 900}])
    try:
        assert scheduler.running
        assert scheduler.jobs["board"]["seconds"] == 30
        assert scheduler.jobs["house"]["seconds"] == 900
    finally:
        await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_stalled_site_does_not_block_other_sites(tmp_path: Path) -> None:
    never = asyncio.Event()

    async def monitor(site, pool, roster):
        if site.id == "stuck":
            await never.wait()
        return MonitorResult(ok=True, found_phone="0501234567")

    scheduler, transport, _ = _scheduler(tmp_path, monitor=monitor)
    run = asyncio.ensure_future(scheduler.run_once([{**MONITOR, "id": "stuck"}, MONITOR]))
    try:
        for _ in range(100):
            if transport.sent:
                break
            await asyncio.sleep(0.01)

        assert transport.sent == ["[board] check ✅ Top position held on 'board'. Phone: 0501234567"]
        assert not run.done()
    finally:
        run.cancel()
        await asyncio.gather(run, return_exceptions=True)


@pytest.mark.asyncio
async def test_tick_failure_log_carries_phase(tmp_path: Path) -> None:
    scheduler, _, _ = _scheduler(tmp_path, bump=Runs(RuntimeError("browser crashed")))

    with capture_logs() as logs:
        await scheduler.tick(BUMP, "house")
        await scheduler.tick({"type": "bump", "id": "house"}, "house")

    failed = [e for e in logs if e["event"] == "Site tick failed"]
    assert len(failed) == 1
    assert failed[0]["site_id"] == "house"
    assert failed[0]["phase"] == "bump"

    invalid = [e for e in logs if e["event"] == "Invalid site configuration; skipping"]
    assert invalid[0]["phase"] == "config"
