"""Tickers and the maintenance scheduler."""

from unittest.mock import MagicMock

from fleet.scheduler import Ticker, Scheduler


def test_tick_now_counts_and_survives_failures():
    calls = []

    def duty():
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("boom")

    ticker = Ticker("work", 60, duty)
    assert ticker.tick_now() is True
    assert ticker.tick_now() is False
    assert ticker.tick_now() is True
    assert ticker.get_status()['ticks'] == 3
    assert ticker.get_status()['failures'] == 1


def test_start_runs_immediately_and_stops():
    ran = []
    ticker = Ticker("fast", 60, lambda: ran.append(1), run_immediately=True)
    ticker.start()
    ticker.stop()
    assert ran == [1]
    assert not ticker.running


def test_default_reaper_job():
    orchestrator = MagicMock()
    scheduler = Scheduler(orchestrator, {'reaper': {'interval_seconds': 120, 'timeout_seconds': 600}})

    assert [job.name for job in scheduler.jobs] == ['reap_inactive_agents']
    assert scheduler.jobs[0].interval == 120

    assert scheduler.run_job_now('reap_inactive_agents') is True
    orchestrator.reap_inactive_agents.assert_called_once_with(600)
    assert scheduler.run_job_now('missing') is False


def test_unknown_job_type_skipped():
    config = {'scheduling': {'jobs': {'mystery': {'interval_seconds': 5}}}}
    assert Scheduler(MagicMock(), config).jobs == []


def test_disabled_scheduling():
    config = {'scheduling': {'enabled': False, 'jobs': {'reap_inactive_agents': {}}}}
    assert Scheduler(MagicMock(), config).jobs == []


def test_start_stop_status():
    orchestrator = MagicMock()
    scheduler = Scheduler(orchestrator, {'reaper': {'interval_seconds': 3600}})
    scheduler.start()
    assert scheduler.get_status()['running'] is True
    scheduler.stop()
    assert scheduler.get_status()['running'] is False
    orchestrator.reap_inactive_agents.assert_called_once_with(900)
