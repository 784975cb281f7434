"""ACME AuthHandler."""
import collections
import concurrent.futures
import logging
import threading
from typing import Dict
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Set

import josepy as jose

from acmeclient import client as acme_client
from acmeclient import constants
from acmeclient import errors
from acmeclient import messages
from acmeclient import solvers as acme_solvers

logger = logging.getLogger(__name__)


class AuthHandler:
    """ACME Authorization Handler for a client.

    Authorizes each domain in its own thread and hands the results
    back in the order the domains were given.

    :ivar .Client client: ACME client API.

    :ivar dict solvers: Mapping from challenge type to the
        `.ChallengeSolver` completing it.

    :ivar list pref_challs: challenge types in order of preference,
        the most preferred first. Defaults to the order of ``solvers``.

    :ivar int max_workers: Maximum number of domains authorized at
        the same time.

    """
    def __init__(self, client: acme_client.Client,
                 solvers: Mapping[str, acme_solvers.ChallengeSolver],
                 pref_challs: Optional[Iterable[str]] = None,
                 max_workers: Optional[int] = None) -> None:
        self.client = client
        self.solvers = dict(solvers)
        self.pref_challs = list(self.solvers) if pref_challs is None else list(pref_challs)
        unsupported = [typ for typ in self.pref_challs if typ not in self.solvers]
        if unsupported:
            raise ValueError('No solver for preferred challenge(s): {0}'.format(
                ', '.join(unsupported)))
        self.max_workers = constants.MAX_WORKERS if max_workers is None else max_workers

    def handle_authorizations(self, domains: Sequence[str], timeout: Optional[float] = None
                              ) -> List[messages.AuthorizationResource]:
        """Authorize every domain in ``domains``.

        All domains are worked on even if some of them fail.

        :param list domains: Domain names, without duplicates.
        :param float timeout: Seconds after which pending domains are
            abandoned. ``None`` waits for all of them.

        :returns: valid authorizations, in the order of ``domains``.
        :rtype: `list` of `.AuthorizationResource`

        :raises ValueError: if ``domains`` is empty or has duplicates.
        :raises .AggregateAuthorizationError: if any domain failed or
            the timeout elapsed.

        """
        domains = list(domains)
        if not domains:
            raise ValueError('No domains to authorize')
        duplicates = sorted(domain for domain, count in collections.Counter(domains).items()
                            if count > 1)
        if duplicates:
            raise ValueError('Duplicate domains: {0}'.format(', '.join(duplicates)))

        cancel = threading.Event()
        failures: Dict[str, Exception] = {}
        authzrs: List[messages.AuthorizationResource] = []
        abandoned: Set[str] = set()

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(domains)),
            thread_name_prefix='authz')
        try:
            futures = {executor.submit(self._authorize, domain, cancel): domain
                       for domain in domains}
            _, not_done = concurrent.futures.wait(futures, timeout=timeout)
            if not_done:
                abandoned = {futures[future] for future in not_done}
                logger.warning('Authorization timed out after %s seconds, abandoning %s',
                               timeout, ', '.join(sorted(abandoned)))
                cancel.set()
                concurrent.futures.wait(not_done)
        finally:
            executor.shutdown(wait=True)

        for future, domain in futures.items():
            try:
                authzrs.append(future.result())
            except Exception as error:  # pylint: disable=broad-except
                failures[domain] = error
            else:
                if domain in abandoned:
                    failures[domain] = errors.TimeoutError(domain, 'authorization timed out')

        if failures:
            self._report_failures(failures)
            raise errors.AggregateAuthorizationError(failures)
        return reorder_authorizations(domains, authzrs)

    def _authorize(self, domain: str, cancel: threading.Event
                   ) -> messages.AuthorizationResource:
        try:
            return self._authorize_domain(domain, cancel)
        except jose.DeserializationError as error:
            raise errors.ChallengeError(
                domain, 'malformed authority response: {0}'.format(error)) from error

    def _authorize_domain(self, domain: str, cancel: threading.Event
                          ) -> messages.AuthorizationResource:
        if cancel.is_set():
            raise errors.TimeoutError(domain, 'cancelled before start')
        authzr = self.client.request_domain_challenges(domain)
        if authzr.body.status == messages.STATUS_VALID:
            logger.info('Authorization for %s is already valid', domain)
            return authzr

        solver = self._choose_solver(authzr)
        challb = solver.solve(authzr, cancel)
        logger.info('Authorization for %s is valid', domain)
        return authzr.update(body=authzr.body.update(
            status=messages.STATUS_VALID,
            challenges=tuple(challb if other.uri == challb.uri else other
                             for other in authzr.body.challenges)))

    def _choose_solver(self, authzr: messages.AuthorizationResource
                       ) -> acme_solvers.ChallengeSolver:
        """Most preferred solver for a challenge ``authzr`` can be satisfied with.

        When the authority lists combinations, only challenges sufficient
        on their own are considered.

        :raises .ChallengeError: if no solver fits.

        """
        challbs = authzr.body.challenges
        if authzr.body.combinations:
            offered = {challbs[combo[0]].chall.typ for combo in authzr.body.combinations
                       if len(combo) == 1}
        else:
            offered = {challb.chall.typ for challb in challbs}
        for typ in self.pref_challs:
            if typ in offered:
                return self.solvers[typ]
        raise errors.ChallengeError(
            authzr.domain, 'no supported challenge among: {0}'.format(
                ', '.join(sorted(offered)) or 'none'))

    @classmethod
    def _report_failures(cls, failures: Mapping[str, Exception]) -> None:
        """Logs every failed domain with the problem reported by the authority."""
        msg = ["Failed to authorize {0} domain(s):".format(len(failures))]
        for domain in sorted(failures):
            error = failures[domain]
            problem = getattr(error, 'error', None)
            if isinstance(problem, messages.Error):
                typ = problem.code if messages.is_acme_error(problem) else problem.typ
                msg.append("\n  Domain: %s\n  Type:   %s\n  Detail: %s" % (
                    domain, typ, problem.detail))
            else:
                msg.append("\n  Domain: %s\n  Error:  %s" % (domain, error))
        logger.warning("".join(msg))


def reorder_authorizations(domains: Sequence[str],
                           authzrs: Iterable[messages.AuthorizationResource]
                           ) -> List[messages.AuthorizationResource]:
    """Put ``authzrs`` in the order of ``domains``.

    :raises ValueError: if a domain has no authorization.

    """
    by_domain = {authzr.domain: authzr for authzr in authzrs}
    missing = [domain for domain in domains if domain not in by_domain]
    if missing:
        raise ValueError('No authorization for: {0}'.format(', '.join(missing)))
    return [by_domain[domain] for domain in domains]
