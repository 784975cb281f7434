"""Challenge solvers.

A solver proves control of the domain of one authorization by
completing one type of challenge. Solvers are looked up by their
challenge type in `SOLVERS`.

"""
import abc
import logging
import threading
from typing import Any
from typing import Dict
from typing import Optional
from typing import Type

import requests

from acmeclient import challenges
from acmeclient import client as acme_client
from acmeclient import constants
from acmeclient import errors
from acmeclient import messages
from acmeclient import standalone

logger = logging.getLogger(__name__)


class ChallengeSolver(metaclass=abc.ABCMeta):
    """Completes one challenge type for an authorization.

    :ivar .Client client: Client shared with the rest of the session;
        every request of the solver is signed by its network.
    :ivar float poll_interval: Seconds between two polls of a challenge.
    :ivar int max_attempts: Polls of a challenge before giving up.

    """
    typ: str = NotImplemented

    def __init__(self, client: acme_client.Client,
                 poll_interval: float = constants.CHALLENGE_POLL_INTERVAL,
                 max_attempts: int = constants.CHALLENGE_POLL_MAX_ATTEMPTS) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    @abc.abstractmethod
    def solve(self, authzr: messages.AuthorizationResource,
              cancel: Optional[threading.Event] = None) -> messages.ChallengeBody:
        """Complete the challenge of ``authzr`` handled by this solver.

        :param .AuthorizationResource authzr: Pending authorization.
        :param threading.Event cancel: Set by the caller to abandon the
            attempt.

        :returns: The challenge body, once valid.
        :rtype: `.ChallengeBody`

        :raises .ChallengeError: if the authority reports the challenge
            as invalid.
        :raises .TimeoutError: if polling exceeds its budget or
            ``cancel`` is set.

        """

    def find_challenge(self, authzr: messages.AuthorizationResource) -> messages.ChallengeBody:
        """Challenge of type `typ` offered by ``authzr``.

        :raises .ChallengeError: if none is offered.

        """
        for challb in authzr.body.challenges:
            if challb.chall.typ == self.typ:
                return challb
        raise errors.ChallengeError(
            authzr.domain, 'no {0} challenge offered'.format(self.typ))

    def poll_until_done(self, challb: messages.ChallengeBody, domain: str,
                        cancel: threading.Event) -> messages.ChallengeBody:
        """Poll ``challb`` until it is no longer pending.

        Transport errors use up an attempt and are otherwise ignored.

        """
        for attempt in range(self.max_attempts):
            if cancel.wait(self.poll_interval):
                raise errors.TimeoutError(domain, 'cancelled')
            try:
                challb, _ = self.client.poll_challenge(challb)
            except (errors.ClientError, requests.exceptions.RequestException) as error:
                logger.debug('Polling %s challenge for %s failed (attempt %d): %s',
                             self.typ, domain, attempt + 1, error)
                continue
            if self._check_status(challb, domain):
                return challb
        raise errors.TimeoutError(
            domain, '{0} challenge still pending after {1} attempts'.format(
                self.typ, self.max_attempts))

    @classmethod
    def _check_status(cls, challb: messages.ChallengeBody, domain: str) -> bool:
        if challb.status == messages.STATUS_VALID:
            return True
        if challb.status in messages.TERMINAL_STATUSES:
            raise errors.ChallengeError(domain, challb.status.name, challb.error)
        return False


class HTTP01Solver(ChallengeSolver):
    """Solves http-01 with a responder started for each challenge.

    Solves for different domains run concurrently, but only one of them
    at a time holds the responder port.

    """
    typ = challenges.HTTP01.typ

    def __init__(self, client: acme_client.Client, port: Optional[int] = None,
                 address: str = "", **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.port = challenges.HTTP01Response.PORT if port is None else port
        self.address = address
        self._port_lock = threading.Lock()

    def solve(self, authzr: messages.AuthorizationResource,
              cancel: Optional[threading.Event] = None) -> messages.ChallengeBody:
        cancel = threading.Event() if cancel is None else cancel
        domain = authzr.domain
        challb = self.find_challenge(authzr)
        response, validation = challb.chall.response_and_validation(self.client.net.key)
        resource = standalone.HTTP01RequestHandler.HTTP01Resource(
            chall=challb.chall, response=response, validation=validation)

        self._acquire_port(domain, cancel)
        try:
            servers = self._start(resource)
            try:
                logger.info('Performing %s challenge for %s', self.typ, domain)
                challr = self.client.answer_challenge(challb, response)
                if self._check_status(challr.body, domain):
                    return challr.body
                logger.info('Waiting for verification of %s...', domain)
                return self.poll_until_done(challr.body, domain, cancel)
            finally:
                self._stop(servers)
        finally:
            self._port_lock.release()

    def _acquire_port(self, domain: str, cancel: threading.Event) -> None:
        while not self._port_lock.acquire(timeout=1):
            if cancel.is_set():
                raise errors.TimeoutError(domain, 'cancelled while waiting for port')
        if cancel.is_set():
            self._port_lock.release()
            raise errors.TimeoutError(domain, 'cancelled')

    def _start(self, resource: standalone.HTTP01RequestHandler.HTTP01Resource
               ) -> standalone.HTTP01DualNetworkedServers:
        try:
            servers = standalone.HTTP01DualNetworkedServers(
                (self.address, self.port), {resource})
        except OSError as error:
            raise errors.StandaloneBindError(error, self.port) from error
        servers.serve_forever()
        return servers

    @classmethod
    def _stop(cls, servers: standalone.HTTP01DualNetworkedServers) -> None:
        for sockname in servers.getsocknames():
            logger.debug("Stopping server at %s:%d...", *sockname[:2])
        servers.shutdown_and_server_close()


SOLVERS: Dict[str, Type[ChallengeSolver]] = {
    HTTP01Solver.typ: HTTP01Solver,
}
"""Solver class for each supported challenge type."""
