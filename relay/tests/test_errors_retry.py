"""Tests for the provider error taxonomy and the retry helper."""

from unittest.mock import MagicMock

from django.test import TestCase

from relay.providers.errors import (
    AlreadyExistsError,
    APIError,
    AuthenticationError,
    AuthorizationError,
    FileSizeLimitError,
    InsufficientStorageError,
    InvalidOperationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    UnsupportedOperationError,
    describe_error,
    error_from_status,
    is_retryable,
    parse_retry_after,
)
from relay.providers.retry import RetryPolicy, retry_call


class ErrorFromStatusTests(TestCase):
    def test_status_mapping(self):
        expected = {
            400: InvalidOperationError,
            401: AuthenticationError,
            403: AuthorizationError,
            404: NotFoundError,
            408: NetworkError,
            409: AlreadyExistsError,
            412: AlreadyExistsError,
            413: FileSizeLimitError,
            429: RateLimitError,
            500: ServiceUnavailableError,
            503: ServiceUnavailableError,
            507: InsufficientStorageError,
        }
        for status, error_class in expected.items():
            error = error_from_status(status, provider_type="webdav")
            self.assertIsInstance(error, error_class, msg=status)
            self.assertEqual(error.status_code, status)
            self.assertEqual(error.provider_type, "webdav")

    def test_unknown_status_is_api_error(self):
        error = error_from_status(418, "teapot")
        self.assertIsInstance(error, APIError)
        self.assertFalse(error.retryable)

        error = error_from_status(599)
        self.assertIsInstance(error, APIError)
        self.assertTrue(error.retryable)

    def test_rate_limit_carries_retry_after(self):
        error = error_from_status(429, retry_after=30.0)
        self.assertEqual(error.retry_after, 30.0)
        self.assertTrue(error.retryable)

    def test_not_found_carries_path(self):
        error = error_from_status(404, path="/missing.txt")
        self.assertEqual(error.path, "/missing.txt")


class ErrorBehaviourTests(TestCase):
    def test_retryable_flags(self):
        self.assertTrue(is_retryable(NetworkError()))
        self.assertTrue(is_retryable(ServiceUnavailableError()))
        self.assertFalse(is_retryable(AuthenticationError()))
        self.assertFalse(is_retryable(ValueError("plain")))

    def test_retryable_override(self):
        self.assertTrue(APIError("x", retryable=True).retryable)

    def test_describe_error_hides_raw_message(self):
        error = AuthenticationError("401 body: <html>token expired</html>")
        message = describe_error(error)
        self.assertNotIn("<html>", message)
        self.assertIn("reconnect", message)

    def test_describe_error_for_unknown_exception(self):
        self.assertEqual(describe_error(RuntimeError("boom")), "An unexpected error occurred.")

    def test_unsupported_operation_message(self):
        error = UnsupportedOperationError("move_file", provider_type="webdav")
        self.assertEqual(error.operation, "move_file")
        self.assertIn("move_file is not supported by webdav", str(error))

    def test_parse_retry_after(self):
        self.assertEqual(parse_retry_after("12"), 12.0)
        self.assertEqual(parse_retry_after("-3"), 0.0)
        self.assertIsNone(parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT"))
        self.assertIsNone(parse_retry_after(None))


class RetryCallTests(TestCase):
    def setUp(self):
        self.sleep = MagicMock()

    def test_returns_first_success(self):
        func = MagicMock(return_value="ok")
        self.assertEqual(retry_call(func, 1, key="v", sleep=self.sleep), "ok")
        func.assert_called_once_with(1, key="v")
        self.sleep.assert_not_called()

    def test_retries_with_doubling_delay(self):
        func = MagicMock(side_effect=[NetworkError(), NetworkError(), "ok"])
        policy = RetryPolicy(attempts=3, base_delay=0.5, max_delay=None)

        self.assertEqual(retry_call(func, policy=policy, sleep=self.sleep), "ok")
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [0.5, 1.0])

    def test_gives_up_after_attempts(self):
        func = MagicMock(side_effect=NetworkError("down"))
        policy = RetryPolicy(attempts=3, base_delay=1.0)

        with self.assertRaises(NetworkError):
            retry_call(func, policy=policy, sleep=self.sleep)
        self.assertEqual(func.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_non_retryable_propagates_immediately(self):
        func = MagicMock(side_effect=AuthenticationError())
        with self.assertRaises(AuthenticationError):
            retry_call(func, sleep=self.sleep)
        func.assert_called_once()
        self.sleep.assert_not_called()

    def test_honours_longer_retry_after(self):
        func = MagicMock(side_effect=[RateLimitError(retry_after=7.0), "ok"])
        retry_call(func, policy=RetryPolicy(attempts=2, base_delay=1.0), sleep=self.sleep)
        self.sleep.assert_called_once_with(7.0)

    def test_max_delay_caps_backoff(self):
        policy = RetryPolicy(attempts=10, base_delay=1.0, max_delay=5.0)
        self.assertEqual(policy.delay_for(1), 1.0)
        self.assertEqual(policy.delay_for(3), 4.0)
        self.assertEqual(policy.delay_for(6), 5.0)

    def test_policy_from_config(self):
        policy = RetryPolicy.from_config({"retry_attempts": "5", "retry_base_delay": "0.25"})
        self.assertEqual(policy.attempts, 5)
        self.assertEqual(policy.base_delay, 0.25)
        self.assertEqual(policy.max_delay, 30.0)
