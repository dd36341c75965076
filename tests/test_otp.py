"""Unit tests for one-time login codes."""

import threading
from datetime import timedelta

import pytest

from sevr.service import otp as otp_module
from sevr.service.errors import CodeMismatch, CodeNotFound, TooManyAttempts
from sevr.service.otp import MAX_ATTEMPTS, OTP_TTL, OTPManager, generate_code
from sevr.storage.memory import MemoryStore
from sevr.storage.models import utcnow


class RecordingDelivery:
    def __init__(self, *, configured=True, result=True, error=None):
        self.configured = configured
        self.result = result
        self.error = error
        self.sent = []

    @property
    def is_configured(self):
        return self.configured

    def send_login_code(self, email, code):
        if self.error is not None:
            raise self.error
        self.sent.append((email, code))
        return self.result


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, level):
        def log(event, **kw):
            self.events.append((level, event, kw))

        return log

    def __getattr__(self, level):
        return self._record(level)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def manager(store, delivery):
    return OTPManager(store, delivery)


def _wrong(code):
    return "000000" if code != "000000" else "111111"


class TestGenerateCode:
    def test_six_digits_in_range(self):
        for _ in range(200):
            code = generate_code()
            assert len(code) == 6
            assert 100000 <= int(code) <= 999999


class TestRequestCode:
    def test_issues_code_with_ten_minute_expiry(self, manager, delivery):
        before = utcnow()
        otp = manager.request_code("  User@Example.com ")
        assert otp.email == "user@example.com"
        assert before + OTP_TTL <= otp.expires_at <= utcnow() + OTP_TTL
        assert delivery.sent == [("user@example.com", otp.code)]

    def test_reaps_used_and_expired_rows(self, manager, store):
        stale = store.create_otp("old@example.com", "123456", utcnow() - timedelta(seconds=1))
        used = manager.request_code("used@example.com")
        store.mark_otp_used(used.id)
        manager.request_code("new@example.com")
        assert stale.id not in store.otps
        assert used.id not in store.otps

    def test_falls_back_to_log_without_delivery(self, store, monkeypatch):
        recorder = RecordingLogger()
        monkeypatch.setattr(otp_module, "logger", recorder)
        otp = OTPManager(store, None).request_code("solo@example.com")
        fallback = [kw for level, event, kw in recorder.events if event == "otp_delivery_fallback"]
        assert fallback == [{"recipient": "so***@example.com", "login_code": otp.code}]

    def test_delivery_failure_does_not_raise(self, store, monkeypatch):
        recorder = RecordingLogger()
        monkeypatch.setattr(otp_module, "logger", recorder)
        failing = RecordingDelivery(error=OSError("smtp down"))
        OTPManager(store, failing).request_code("fail@example.com")
        events = [event for _, event, _ in recorder.events]
        assert "otp_delivery_error" in events
        assert "otp_delivery_fallback" in events

    def test_unconfigured_channel_is_skipped(self, store):
        channel = RecordingDelivery(configured=False)
        OTPManager(store, channel).request_code("skip@example.com")
        assert channel.sent == []


class TestVerifyCode:
    def test_correct_code_succeeds_once(self, manager):
        otp = manager.request_code("a@x.com")
        assert manager.verify_code("a@x.com", otp.code) == "a@x.com"
        with pytest.raises(CodeNotFound):
            manager.verify_code("a@x.com", otp.code)

    def test_email_is_normalized_on_verify(self, manager):
        otp = manager.request_code("a@x.com")
        assert manager.verify_code(" A@X.COM ", f" {otp.code} ") == "a@x.com"

    def test_unknown_email(self, manager):
        with pytest.raises(CodeNotFound) as exc_info:
            manager.verify_code("nobody@example.com", "123456")
        assert exc_info.value.message == "Invalid or expired code"
        assert exc_info.value.status_code == 401

    def test_mismatch_counts_attempts(self, manager, store):
        otp = manager.request_code("a@x.com")
        with pytest.raises(CodeMismatch) as exc_info:
            manager.verify_code("a@x.com", _wrong(otp.code))
        assert exc_info.value.message == "Invalid code"
        assert store.otps[otp.id].attempts == 1
        assert manager.verify_code("a@x.com", otp.code) == "a@x.com"

    def test_fifth_wrong_attempt_is_rate_limited(self, manager):
        otp = manager.request_code("a@x.com")
        for _ in range(MAX_ATTEMPTS - 1):
            with pytest.raises(CodeMismatch):
                manager.verify_code("a@x.com", _wrong(otp.code))
        with pytest.raises(TooManyAttempts) as exc_info:
            manager.verify_code("a@x.com", _wrong(otp.code))
        assert exc_info.value.message == "Too many attempts. Please request a new code."

    def test_correct_code_after_cap_still_fails(self, manager, store):
        otp = manager.request_code("a@x.com")
        for _ in range(MAX_ATTEMPTS - 1):
            with pytest.raises(CodeMismatch):
                manager.verify_code("a@x.com", _wrong(otp.code))
        with pytest.raises(TooManyAttempts):
            manager.verify_code("a@x.com", _wrong(otp.code))
        with pytest.raises(TooManyAttempts):
            manager.verify_code("a@x.com", otp.code)
        assert store.otps[otp.id].used is True
        with pytest.raises(CodeNotFound):
            manager.verify_code("a@x.com", otp.code)

    def test_expired_code_is_not_found(self, manager):
        otp = manager.request_code("a@x.com")
        manager._now = lambda: utcnow() + OTP_TTL + timedelta(seconds=1)
        with pytest.raises(CodeNotFound):
            manager.verify_code("a@x.com", otp.code)

    def test_newest_code_wins(self, manager):
        first = manager.request_code("a@x.com")
        second = manager.request_code("a@x.com")
        if first.code != second.code:
            with pytest.raises(CodeMismatch):
                manager.verify_code("a@x.com", first.code)
        assert manager.verify_code("a@x.com", second.code) == "a@x.com"

    def test_non_ascii_submission_is_a_mismatch(self, manager):
        manager.request_code("a@x.com")
        with pytest.raises(CodeMismatch):
            manager.verify_code("a@x.com", "１２３４５６")


class TestConcurrentVerify:
    def _race(self, store, manager, submissions):
        """Run ``verify_code`` from several threads that all read the row first."""
        barrier = threading.Barrier(len(submissions))
        read_latest = store.get_latest_otp

        def synchronized_read(email, now=None):
            otp = read_latest(email, now)
            barrier.wait(timeout=5)
            return otp

        store.get_latest_otp = synchronized_read
        results = []
        lock = threading.Lock()

        def attempt(code):
            try:
                outcome = manager.verify_code("a@x.com", code)
            except (CodeNotFound, CodeMismatch, TooManyAttempts) as exc:
                outcome = type(exc).__name__
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(code,)) for code in submissions]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        store.get_latest_otp = read_latest
        return results

    def test_same_code_is_consumed_once(self, manager, store):
        otp = manager.request_code("a@x.com")
        results = self._race(store, manager, [otp.code, otp.code])
        assert results.count("a@x.com") == 1
        assert results.count("CodeNotFound") == 1

    def test_correct_code_loses_to_cap_reached_concurrently(self, manager, store):
        otp = manager.request_code("a@x.com")
        for _ in range(MAX_ATTEMPTS - 1):
            with pytest.raises(CodeMismatch):
                manager.verify_code("a@x.com", _wrong(otp.code))
        # Both threads read attempts == 4; the wrong guess lands first
        wrong_first = threading.Event()
        increment = store.increment_otp_attempts

        def tracked_increment(otp_id):
            updated = increment(otp_id)
            wrong_first.set()
            return updated

        mark_used = store.mark_otp_used

        def delayed_mark(otp_id, **kwargs):
            wrong_first.wait(timeout=5)
            return mark_used(otp_id, **kwargs)

        store.increment_otp_attempts = tracked_increment
        store.mark_otp_used = delayed_mark
        results = self._race(store, manager, [otp.code, _wrong(otp.code)])
        assert sorted(results) == ["TooManyAttempts", "TooManyAttempts"]
        assert store.otps[otp.id].used is True
