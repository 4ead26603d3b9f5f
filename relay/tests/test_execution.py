"""Tests for execution tracking and cooperative cancellation."""

from django.test import TestCase

from relay.exceptions import CapacityError, ConflictError
from relay.execution import (
    CANCEL,
    PAUSE,
    CancellationToken,
    ExecutionRegistry,
    JobCancelled,
    JobPaused,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class CancellationTokenTests(TestCase):
    def test_no_request(self):
        token = CancellationToken()
        token.check()
        self.assertFalse(token.pause_requested)
        self.assertFalse(token.cancel_requested)

    def test_pause(self):
        token = CancellationToken()
        token.request_pause()
        with self.assertRaises(JobPaused):
            token.check()
        # A pause does not interrupt a file in flight
        token.check_cancelled()

    def test_cancel_wins_over_pause(self):
        token = CancellationToken()
        token.request_pause()
        token.request_cancel()
        with self.assertRaises(JobCancelled):
            token.check()

    def test_poll_picks_up_persisted_request(self):
        requests = [PAUSE]
        token = CancellationToken(poll=lambda: requests[-1], poll_interval=0)

        with self.assertRaises(JobPaused):
            token.check()

        requests.append(CANCEL)
        with self.assertRaises(JobCancelled):
            token.check_cancelled()

    def test_poll_is_throttled(self):
        clock = FakeClock()
        calls = []

        def poll():
            calls.append(clock.now)
            return ""

        token = CancellationToken(poll=poll, poll_interval=1.0, clock=clock)
        token.check()
        token.check()
        clock.now = 0.5
        token.check()
        clock.now = 1.5
        token.check()

        self.assertEqual(calls, [0.0, 1.5])


class ExecutionRegistryTests(TestCase):
    def setUp(self):
        self.registry = ExecutionRegistry(capacity=2, label="Transfer")

    def test_duplicate_start_conflicts(self):
        self.registry.acquire("job-1", CancellationToken())
        with self.assertRaises(ConflictError) as ctx:
            self.registry.acquire("job-1", CancellationToken())
        self.assertIn("Transfer job-1 is already running", str(ctx.exception))

    def test_capacity(self):
        self.registry.acquire("job-1", CancellationToken())
        self.registry.acquire("job-2", CancellationToken())
        with self.assertRaises(CapacityError):
            self.registry.acquire("job-3", CancellationToken())
        self.assertEqual(self.registry.active_count, 2)

    def test_claim_releases_on_error(self):
        token = CancellationToken()
        with self.assertRaises(RuntimeError):
            with self.registry.claim("job-1", token) as execution:
                self.assertIs(self.registry.get("job-1"), execution)
                self.assertIs(execution.token, token)
                raise RuntimeError("boom")

        self.assertFalse(self.registry.is_active("job-1"))

    def test_ids_are_compared_as_strings(self):
        self.registry.acquire(42, CancellationToken())
        self.assertTrue(self.registry.is_active("42"))
        self.registry.release("42")
        self.assertEqual(self.registry.active_count, 0)
