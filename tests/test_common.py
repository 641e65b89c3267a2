"""Tests for common.py retry and timeout helpers."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from common import backoff_delay, call_with_timeout, retry_call
from reconciler.errors import ProviderError


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles(self):
        assert [backoff_delay(a, 1.0, 100.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert backoff_delay(10, 1.0, 30.0) == 30.0


class TestCallWithTimeout:
    """Tests for call_with_timeout."""

    def test_no_timeout_calls_directly(self):
        assert call_with_timeout(lambda x: x * 2, None, 21) == 42

    def test_returns_value(self):
        assert call_with_timeout(lambda: 'ok', 5) == 'ok'

    def test_reraises_error(self):
        def boom():
            raise ValueError('bad')

        with pytest.raises(ValueError, match='bad'):
            call_with_timeout(boom, 5)

    def test_timeout_is_transient(self):
        with pytest.raises(ProviderError) as exc_info:
            call_with_timeout(time.sleep, 0.05, 2)
        assert exc_info.value.transient
        assert 'timed out' in str(exc_info.value)


class TestRetryCall:
    """Tests for retry_call."""

    def test_success_first_try(self):
        fn = MagicMock(return_value='done')
        sleep = MagicMock()
        assert retry_call(fn, sleep=sleep) == 'done'
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_transient_then_success(self):
        fn = MagicMock(side_effect=[ProviderError('busy', transient=True), 'done'])
        sleep = MagicMock()
        assert retry_call(fn, max_retries=3, backoff_base=0.5, sleep=sleep) == 'done'
        assert fn.call_count == 2
        sleep.assert_called_once_with(0.5)

    def test_retries_exhausted(self):
        fn = MagicMock(side_effect=ProviderError('busy', transient=True))
        sleep = MagicMock()
        with pytest.raises(ProviderError, match='busy'):
            retry_call(fn, max_retries=3, backoff_base=1.0, backoff_max=3.0, sleep=sleep)
        assert fn.call_count == 4
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 3.0]

    def test_permanent_not_retried(self):
        fn = MagicMock(side_effect=ProviderError('denied'))
        with pytest.raises(ProviderError, match='denied'):
            retry_call(fn, max_retries=3, sleep=MagicMock())
        assert fn.call_count == 1

    def test_other_exceptions_propagate(self):
        fn = MagicMock(side_effect=KeyError('x'))
        with pytest.raises(KeyError):
            retry_call(fn, max_retries=3, sleep=MagicMock())
        assert fn.call_count == 1

    def test_zero_retries(self):
        fn = MagicMock(side_effect=ProviderError('busy', transient=True))
        with pytest.raises(ProviderError):
            retry_call(fn, max_retries=0, sleep=MagicMock())
        assert fn.call_count == 1

    def test_on_attempt_counts(self):
        attempts = []
        fn = MagicMock(side_effect=[ProviderError('busy', transient=True)] * 2 + ['done'])
        retry_call(fn, max_retries=3, sleep=MagicMock(), on_attempt=attempts.append)
        assert attempts == [1, 2, 3]

    def test_zero_backoff_skips_sleep(self):
        fn = MagicMock(side_effect=[ProviderError('busy', transient=True), 'done'])
        sleep = MagicMock()
        retry_call(fn, backoff_base=0, sleep=sleep)
        sleep.assert_not_called()

    def test_stop_abandons_retry(self):
        fn = MagicMock(side_effect=ProviderError('busy', transient=True))
        stop = threading.Event()
        stop.set()
        with pytest.raises(ProviderError, match='busy'):
            retry_call(fn, max_retries=3, backoff_base=5.0, sleep=stop.wait, stop=stop)
        assert fn.call_count == 1
