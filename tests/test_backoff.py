"""Tests for backoff module."""

import pytest

from backoff import PollBackoff, ReconnectBackoff


def test_poll_backoff_grows_on_idle_up_to_max():
    """Empty polls multiply the delay until the cap."""
    backoff = PollBackoff(min_delay_s=0.05, max_delay_s=0.3, backoff_multiplier=2.0)
    assert backoff.delay == pytest.approx(0.05)
    assert backoff.on_idle() == pytest.approx(0.1)
    assert backoff.on_idle() == pytest.approx(0.2)
    assert backoff.on_idle() == pytest.approx(0.3)
    assert backoff.on_idle() == pytest.approx(0.3)


def test_poll_backoff_snaps_back_on_data():
    """Any received byte resets the delay to the minimum."""
    backoff = PollBackoff(min_delay_s=0.05, max_delay_s=2.0)
    for _ in range(5):
        backoff.on_idle()
    assert backoff.on_data() == pytest.approx(0.05)
    backoff.on_idle()
    backoff.reset()
    assert backoff.delay == pytest.approx(0.05)


def test_reconnect_backoff_doubles_and_caps():
    backoff = ReconnectBackoff(initial_backoff_s=5.0, max_backoff_s=30.0)
    assert backoff.record_failure(100.0) == pytest.approx(5.0)
    assert backoff.next_allowed == pytest.approx(105.0)
    assert backoff.record_failure(105.0) == pytest.approx(10.0)
    assert backoff.record_failure(115.0) == pytest.approx(20.0)
    assert backoff.record_failure(135.0) == pytest.approx(30.0)
    assert backoff.record_failure(165.0) == pytest.approx(30.0)


def test_reconnect_backoff_ready_and_reset():
    backoff = ReconnectBackoff(initial_backoff_s=5.0, max_backoff_s=300.0)
    assert backoff.ready(0.0)
    backoff.record_failure(100.0)
    assert not backoff.ready(104.9)
    assert backoff.ready(105.0)

    backoff.reset()
    assert backoff.ready(100.0)
    assert backoff.get_backoff_delay() == pytest.approx(5.0)
