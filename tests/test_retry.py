"""Tests for storage/retry.py - bounded retry helpers."""

from unittest.mock import Mock

from alpine_vm_image.storage.retry import retry_once, wait_for_path


class TestRetryOnce:
    """Tests for retry_once()."""

    def test_first_attempt_succeeds(self):
        """Test that recover is not called when the first attempt succeeds."""
        recover = Mock()

        assert retry_once(lambda: "/dev/nbd0", recover) == "/dev/nbd0"
        recover.assert_not_called()

    def test_second_attempt_after_recover(self):
        attempt = Mock(side_effect=[None, "/dev/nbd1"])
        recover = Mock()

        assert retry_once(attempt, recover) == "/dev/nbd1"
        assert attempt.call_count == 2
        recover.assert_called_once_with()

    def test_gives_up_after_one_retry(self):
        """Test that there is never a third attempt."""
        attempt = Mock(return_value=None)
        recover = Mock()

        assert retry_once(attempt, recover) is None
        assert attempt.call_count == 2
        assert recover.call_count == 1


class TestWaitForPath:
    """Tests for wait_for_path()."""

    def test_present_immediately(self):
        sleep = Mock()

        assert wait_for_path("/dev/nbd0p1", sleep=sleep, exists=lambda path: True)
        sleep.assert_not_called()

    def test_appears_after_sleep(self):
        sleep = Mock()
        settle = Mock()
        exists = Mock(side_effect=[False, True])

        assert wait_for_path("/dev/nbd0p1", sleep=sleep, settle=settle, exists=exists, delay=0.5)
        sleep.assert_called_once_with(0.5)
        settle.assert_not_called()

    def test_appears_after_settle(self):
        sleep = Mock()
        settle = Mock()
        exists = Mock(side_effect=[False, False, True])

        assert wait_for_path("/dev/nbd0p1", sleep=sleep, settle=settle, exists=exists)
        settle.assert_called_once_with()

    def test_never_appears(self):
        exists = Mock(return_value=False)

        assert not wait_for_path("/dev/nbd0p1", sleep=Mock(), settle=Mock(), exists=exists)
        assert exists.call_count == 3

    def test_never_appears_without_settle(self):
        exists = Mock(return_value=False)

        assert not wait_for_path("/dev/nbd0p1", sleep=Mock(), exists=exists)
        assert exists.call_count == 2
