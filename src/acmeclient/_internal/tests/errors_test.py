"""Tests for acmeclient.errors."""
import sys
import unittest
from unittest import mock

import pytest


class BadNonceTest(unittest.TestCase):
    """Tests for acmeclient.errors.BadNonce."""

    def setUp(self):
        from acmeclient.errors import BadNonce
        self.error = BadNonce(nonce="xxx", error="error")

    def test_str(self):
        assert "Invalid nonce ('xxx'): error" == str(self.error)


class MissingNonceTest(unittest.TestCase):
    """Tests for acmeclient.errors.MissingNonce."""

    def setUp(self):
        from acmeclient.errors import MissingNonce
        self.error = MissingNonce({'Content-Type': 'application/json'})

    def test_str(self):
        assert "replay nonce" in str(self.error)
        assert "application/json" in str(self.error)


class ConflictErrorTest(unittest.TestCase):
    """Tests for acmeclient.errors.ConflictError."""

    def test_location(self):
        from acmeclient.errors import ConflictError
        error = ConflictError('https://example.com/acme/reg/1')
        assert error.location == 'https://example.com/acme/reg/1'
        assert 'https://example.com/acme/reg/1' in str(error)


class ChallengeErrorTest(unittest.TestCase):
    """Tests for acmeclient.errors.ChallengeError."""

    def test_str_without_problem(self):
        from acmeclient.errors import ChallengeError
        assert 'Challenge failed for example.com: invalid' == str(
            ChallengeError('example.com', 'invalid'))

    def test_str_with_problem(self):
        from acmeclient.errors import ChallengeError
        from acmeclient.messages import Error
        error = ChallengeError('example.com', 'invalid', Error.with_code(
            'connection', detail='Connection refused'))
        assert 'example.com' in str(error)
        assert 'invalid' in str(error)
        assert 'Connection refused' in str(error)


class TimeoutErrorTest(unittest.TestCase):
    """Tests for acmeclient.errors.TimeoutError."""

    def test_str_domain(self):
        from acmeclient.errors import TimeoutError
        assert 'Timed out for example.com: cancelled' == str(
            TimeoutError('example.com', 'cancelled'))

    def test_str_no_domain(self):
        from acmeclient.errors import TimeoutError
        assert 'Timed out: polling budget exhausted' == str(TimeoutError())


class StandaloneBindErrorTest(unittest.TestCase):
    """Tests for acmeclient.errors.StandaloneBindError."""

    def test_str(self):
        from acmeclient.errors import StandaloneBindError
        error = StandaloneBindError(OSError('in use'), 80)
        assert error.port == 80
        assert 'Problem binding to port 80: in use' == str(error)


class AggregateAuthorizationErrorTest(unittest.TestCase):
    """Tests for acmeclient.errors.AggregateAuthorizationError."""

    def setUp(self):
        from acmeclient.errors import AggregateAuthorizationError
        from acmeclient.errors import ChallengeError
        self.failures = {
            'b.example.com': ChallengeError('b.example.com', 'invalid'),
            'a.example.com': mock.sentinel.error,
        }
        self.error = AggregateAuthorizationError(self.failures)

    def test_domains_sorted(self):
        assert ('a.example.com', 'b.example.com') == self.error.domains

    def test_failures_copied(self):
        self.failures.clear()
        assert len(self.error.failures) == 2

    def test_str_names_every_domain(self):
        assert str(self.error).startswith('Authorization failed for 2 domain(s)')
        assert 'a.example.com' in str(self.error)
        assert 'b.example.com: Challenge failed for b.example.com: invalid' in str(self.error)

    def test_repr(self):
        assert repr(self.error).startswith('AggregateAuthorizationError(failures=')


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
