"""Tests for acmeclient.solvers."""
import http.client as http_client
import socket
import sys
import threading
import unittest
from unittest import mock

import pytest
import requests

from acmeclient import challenges
from acmeclient import errors
from acmeclient import messages
from acmeclient._internal.tests import test_util

KEY = test_util.rsa_jwk()


def _authzr(domain='example.com', challbs=None):
    if challbs is None:
        challbs = (messages.ChallengeBody(
            uri='https://ca.example/acme/chall/' + domain,
            chall=challenges.HTTP01(token=b'a' * 16),
            status=messages.STATUS_PENDING),)
    return messages.AuthorizationResource(
        uri='https://ca.example/acme/authz/' + domain,
        body=messages.Authorization(
            identifier=messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain),
            challenges=challbs, status=messages.STATUS_PENDING))


def _challr(challb, status, error=None):
    return messages.ChallengeResource(
        authzr_uri='https://ca.example/acme/authz/1',
        body=challb.update(status=status, error=error))


class ChallengeSolverTest(unittest.TestCase):
    """Tests for acmeclient.solvers.ChallengeSolver."""

    def setUp(self):
        from acmeclient.solvers import HTTP01Solver
        self.client = mock.MagicMock()
        self.solver = HTTP01Solver(self.client, poll_interval=0, max_attempts=3)
        self.authzr = _authzr()
        self.challb = self.authzr.body.challenges[0]
        self.cancel = threading.Event()

    def test_find_challenge(self):
        assert self.challb == self.solver.find_challenge(self.authzr)

    def test_find_challenge_missing(self):
        with pytest.raises(errors.ChallengeError) as excinfo:
            self.solver.find_challenge(_authzr(challbs=()))
        assert 'example.com' == excinfo.value.domain

    def test_poll_until_done_valid(self):
        pending = self.challb
        valid = self.challb.update(status=messages.STATUS_VALID)
        self.client.poll_challenge.side_effect = [
            (pending, mock.MagicMock()), (valid, mock.MagicMock())]
        assert valid == self.solver.poll_until_done(pending, 'example.com', self.cancel)
        assert 2 == self.client.poll_challenge.call_count

    def test_poll_until_done_transport_errors_retried(self):
        valid = self.challb.update(status=messages.STATUS_VALID)
        self.client.poll_challenge.side_effect = [
            errors.ClientError('bad gateway'),
            requests.exceptions.ConnectionError('reset'),
            (valid, mock.MagicMock())]
        assert valid == self.solver.poll_until_done(self.challb, 'example.com', self.cancel)

    def test_poll_until_done_invalid(self):
        problem = messages.Error.with_code('unauthorized', detail='wrong content')
        self.client.poll_challenge.return_value = (
            self.challb.update(status=messages.STATUS_INVALID, error=problem),
            mock.MagicMock())
        with pytest.raises(errors.ChallengeError) as excinfo:
            self.solver.poll_until_done(self.challb, 'example.com', self.cancel)
        assert 'example.com' == excinfo.value.domain
        assert 'invalid' == excinfo.value.reason
        assert problem == excinfo.value.error
        assert 'wrong content' in str(excinfo.value)

    def test_poll_until_done_exhausted(self):
        self.client.poll_challenge.return_value = (self.challb, mock.MagicMock())
        with pytest.raises(errors.TimeoutError) as excinfo:
            self.solver.poll_until_done(self.challb, 'example.com', self.cancel)
        assert 'example.com' == excinfo.value.domain
        assert 3 == self.client.poll_challenge.call_count

    def test_poll_until_done_cancelled(self):
        self.cancel.set()
        with pytest.raises(errors.TimeoutError):
            self.solver.poll_until_done(self.challb, 'example.com', self.cancel)
        self.client.poll_challenge.assert_not_called()

    def test_check_status(self):
        # pylint: disable=protected-access
        assert self.solver._check_status(
            self.challb.update(status=messages.STATUS_VALID), 'example.com')
        assert not self.solver._check_status(self.challb, 'example.com')
        assert not self.solver._check_status(
            self.challb.update(status=messages.STATUS_PROCESSING), 'example.com')
        for status in (messages.STATUS_INVALID, messages.STATUS_EXPIRED,
                       messages.STATUS_REVOKED, messages.STATUS_DEACTIVATED):
            with pytest.raises(errors.ChallengeError):
                self.solver._check_status(self.challb.update(status=status), 'example.com')


class HTTP01SolverTest(unittest.TestCase):
    """Tests for acmeclient.solvers.HTTP01Solver."""

    def setUp(self):
        from acmeclient.solvers import HTTP01Solver
        self.client = mock.MagicMock()
        self.client.net.key = KEY
        self.port = test_util.free_port()
        self.solver = HTTP01Solver(
            self.client, port=self.port, poll_interval=0, max_attempts=3)
        self.authzr = _authzr()
        self.challb = self.authzr.body.challenges[0]

    def _assert_port_released(self):
        assert not self.solver._port_lock.locked()  # pylint: disable=protected-access
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(('', self.port))

    def test_default_port(self):
        from acmeclient.solvers import HTTP01Solver
        assert 80 == HTTP01Solver(self.client).port

    def test_solve_serves_key_authorization(self):
        key_authorization = self.challb.chall.key_authorization(KEY)
        served = {}

        def answer_challenge(challb, response):
            served['response'] = response
            http_response = requests.get('http://localhost:{0}{1}'.format(
                self.port, challb.chall.path))
            served['status'] = http_response.status_code
            served['type'] = http_response.headers['Content-Type']
            served['body'] = http_response.text
            return _challr(challb, messages.STATUS_VALID)

        self.client.answer_challenge.side_effect = answer_challenge

        challb = self.solver.solve(self.authzr)

        assert messages.STATUS_VALID == challb.status
        assert http_client.OK == served['status']
        assert 'text/plain' == served['type']
        assert key_authorization == served['body']
        assert key_authorization == served['response'].key_authorization
        self.client.poll_challenge.assert_not_called()
        self._assert_port_released()

    def test_solve_polls_until_valid(self):
        self.client.answer_challenge.return_value = _challr(
            self.challb, messages.STATUS_PENDING)
        valid = self.challb.update(status=messages.STATUS_VALID)
        self.client.poll_challenge.side_effect = [
            (self.challb, mock.MagicMock()), (valid, mock.MagicMock())]

        assert valid == self.solver.solve(self.authzr)
        assert 2 == self.client.poll_challenge.call_count
        self._assert_port_released()

    def test_solve_invalid_releases_port(self):
        problem = messages.Error.with_code('connection', detail='refused')
        self.client.answer_challenge.return_value = _challr(
            self.challb, messages.STATUS_PENDING)
        self.client.poll_challenge.return_value = (
            self.challb.update(status=messages.STATUS_INVALID, error=problem),
            mock.MagicMock())

        with pytest.raises(errors.ChallengeError) as excinfo:
            self.solver.solve(self.authzr)
        assert 'example.com' == excinfo.value.domain
        assert problem == excinfo.value.error
        self._assert_port_released()

    def test_solve_timeout_releases_port(self):
        self.client.answer_challenge.return_value = _challr(
            self.challb, messages.STATUS_PENDING)
        self.client.poll_challenge.return_value = (self.challb, mock.MagicMock())

        with pytest.raises(errors.TimeoutError):
            self.solver.solve(self.authzr)
        assert 3 == self.client.poll_challenge.call_count
        self._assert_port_released()

    def test_solve_answer_error_releases_port(self):
        self.client.answer_challenge.side_effect = messages.Error.with_code('malformed')
        with pytest.raises(messages.Error):
            self.solver.solve(self.authzr)
        self._assert_port_released()

    def test_solve_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(errors.TimeoutError):
            self.solver.solve(self.authzr, cancel)
        self.client.answer_challenge.assert_not_called()
        self._assert_port_released()

    def test_solve_cancelled_while_polling(self):
        cancel = threading.Event()
        self.client.answer_challenge.return_value = _challr(
            self.challb, messages.STATUS_PENDING)

        def poll_challenge(challb):
            cancel.set()
            return challb, mock.MagicMock()
        self.client.poll_challenge.side_effect = poll_challenge

        with pytest.raises(errors.TimeoutError):
            self.solver.solve(self.authzr, cancel)
        assert 1 == self.client.poll_challenge.call_count
        self._assert_port_released()

    def test_solve_cancelled_waiting_for_port(self):
        cancel = threading.Event()
        self.solver._port_lock.acquire()  # pylint: disable=protected-access
        try:
            threading.Timer(0.1, cancel.set).start()
            with pytest.raises(errors.TimeoutError):
                self.solver.solve(self.authzr, cancel)
        finally:
            self.solver._port_lock.release()  # pylint: disable=protected-access
        self.client.answer_challenge.assert_not_called()

    def test_solve_missing_challenge(self):
        with pytest.raises(errors.ChallengeError):
            self.solver.solve(_authzr(challbs=()))
        self.client.answer_challenge.assert_not_called()

    @mock.patch('acmeclient.solvers.standalone.HTTP01DualNetworkedServers')
    def test_solve_bind_error(self, mock_servers):
        mock_servers.side_effect = OSError(98, 'Address already in use')
        with pytest.raises(errors.StandaloneBindError) as excinfo:
            self.solver.solve(self.authzr)
        assert self.port == excinfo.value.port
        assert str(self.port) in str(excinfo.value)
        self.client.answer_challenge.assert_not_called()
        assert not self.solver._port_lock.locked()  # pylint: disable=protected-access

    def test_concurrent_solves_share_port_in_turn(self):
        state = {'active': 0, 'max': 0}
        lock = threading.Lock()

        def answer_challenge(challb, response):
            # pylint: disable=unused-argument
            with lock:
                state['active'] += 1
                state['max'] = max(state['max'], state['active'])
            threading.Event().wait(0.05)
            with lock:
                state['active'] -= 1
            return _challr(challb, messages.STATUS_VALID)

        self.client.answer_challenge.side_effect = answer_challenge
        domains = ['a.example.com', 'b.example.com', 'c.example.com']
        results = {}

        def solve(domain):
            results[domain] = self.solver.solve(_authzr(domain))

        threads = [threading.Thread(target=solve, args=(domain,)) for domain in domains]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(domains) == sorted(results)
        assert 1 == state['max']
        self._assert_port_released()


class SolversRegistryTest(unittest.TestCase):
    """Tests for acmeclient.solvers.SOLVERS."""

    def test_http01_registered(self):
        from acmeclient.solvers import HTTP01Solver
        from acmeclient.solvers import SOLVERS
        assert {'http-01': HTTP01Solver} == SOLVERS


if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv[1:] + [__file__]))  # pragma: no cover
