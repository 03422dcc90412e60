import pytest

from attendance_kiosk.config import load_config
from attendance_kiosk.errors import LedgerRejectedError, LedgerUnavailableError
from attendance_kiosk.network import NetworkMonitor
from attendance_kiosk.recognition.cooldown import CooldownTracker
from attendance_kiosk.utils.cache import get_employees_hash, load_cache, save_cache
from attendance_kiosk.utils.timing import backoff_delay, format_uptime, retry_with_backoff


def test_format_uptime():
    assert format_uptime(45) == '45s'
    assert format_uptime(90061) == '1d 1h 1m 1s'


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(n, 2.0, 10.0) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_retry_only_on_listed_errors():
    sleeps = []
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise LedgerUnavailableError('down')
        return 'ok'

    assert retry_with_backoff(flaky, max_attempts=3, sleep=sleeps.append,
                              retry_on=(LedgerUnavailableError,)) == 'ok'
    assert sleeps == [1.0, 2.0]

    def rejected():
        attempts.append(1)
        raise LedgerRejectedError('no')

    attempts.clear()
    with pytest.raises(LedgerRejectedError):
        retry_with_backoff(rejected, sleep=sleeps.append, retry_on=(LedgerUnavailableError,))
    assert len(attempts) == 1


def test_template_cache_round_trip(tmp_path):
    cache_file = str(tmp_path / 'templates.pkl')
    records = [{'id': 'e1', 'face_encodings': [[0.1, 0.2]]}]
    save_cache(records, get_employees_hash(records), cache_file)

    employees, emp_hash = load_cache(cache_file)
    assert employees == records
    assert emp_hash == get_employees_hash(list(reversed(records)))


def test_missing_or_corrupt_cache(tmp_path):
    cache_file = tmp_path / 'templates.pkl'
    assert load_cache(str(cache_file)) == (None, None)
    cache_file.write_bytes(b'')
    assert load_cache(str(cache_file)) == (None, None)


def test_cooldown_window():
    tracker = CooldownTracker(30)
    assert not tracker.is_cooling_down('e1', 100)
    tracker.mark('e1', 100)
    assert tracker.is_cooling_down('e1', 129)
    assert tracker.remaining('e1', 110) == 20
    assert not tracker.is_cooling_down('e1', 130)
    tracker.prune(200)
    assert tracker.remaining('e1', 200) == 0.0


def test_network_monitor_notifies_on_transition_only():
    seen = []
    monitor = NetworkMonitor()
    monitor.subscribe(seen.append)
    monitor.mark_online()
    monitor.mark_offline('timeout')
    monitor.mark_offline()
    monitor.mark_online()
    assert seen == [False, True]


def test_invalid_match_metric_rejected(monkeypatch):
    monkeypatch.setenv('MATCH_METRIC', 'manhattan')
    with pytest.raises(ValueError):
        load_config()


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv('MATCH_THRESHOLD', '0.7')
    monkeypatch.setenv('LEDGER_URL', 'http://ledger.local/')
    config = load_config()
    assert config.match_threshold == 0.7
    assert config.ledger_url == 'http://ledger.local'
