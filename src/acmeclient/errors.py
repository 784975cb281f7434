"""ACME client errors."""
import typing
from typing import Any
from typing import Mapping
from typing import Optional
from typing import Tuple

# acmeclient.messages imports this module; its names are quoted below.
if typing.TYPE_CHECKING:
    from acmeclient import messages  # pragma: no cover


class Error(Exception):
    """Generic ACME client error."""


class ClientError(Error):
    """The authority answered with something that is not usable."""


class UnexpectedUpdate(ClientError):
    """The authority answered for another resource than the one requested."""


class NonceError(ClientError):
    """The ``Replay-Nonce`` of a response is missing or malformed."""


class BadNonce(NonceError):
    """``Replay-Nonce`` header that is not valid base64url."""
    def __init__(self, nonce: str, error: Exception, *args: Any) -> None:
        super().__init__(*args)
        self.nonce = nonce
        self.error = error

    def __str__(self) -> str:
        return 'Invalid nonce ({0!r}): {1}'.format(self.nonce, self.error)


class MissingNonce(NonceError):
    """Response without the ``Replay-Nonce`` header.

    Every successful POST response must carry a new nonce.

    :ivar headers: Mapping of HTTP headers

    """
    def __init__(self, headers: Mapping, *args: Any) -> None:
        super().__init__(*args)
        self.headers = dict(headers)

    def __str__(self) -> str:
        return ('Server response did not include a replay '
                'nonce, headers: {0}'.format(self.headers))


class ConflictError(ClientError):
    """HTTP 409 from the authority.

    The authority answers a registration for an already registered key
    this way, with the existing account URL in the ``Location`` header.

    """
    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__()

    def __str__(self) -> str:
        return 'Resource already exists at {0}'.format(self.location)


class DirectoryError(ClientError):
    """The directory resource could not be fetched or parsed."""


class SigningError(Error):
    """A request could not be signed.

    Raised when no nonce is available and none can be fetched, or when
    the key operation itself fails.

    """


class RegistrationError(Error):
    """Account registration failed for a reason other than a conflict.

    :ivar error: Problem document returned by the authority, if any.

    """
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        super().__init__()

    def __str__(self) -> str:
        return 'Registration failed: {0}'.format(self.error)


class ChallengeError(Error):
    """A challenge could not be completed for a domain.

    :ivar str domain: Domain being authorized.
    :ivar str reason: Terminal status or cause.
    :ivar error: Problem document reported by the authority, if any.

    """
    def __init__(self, domain: str, reason: str,
                 error: Optional['messages.Error'] = None) -> None:
        self.domain = domain
        self.reason = reason
        self.error = error
        super().__init__()

    def __str__(self) -> str:
        msg = 'Challenge failed for {0}: {1}'.format(self.domain, self.reason)
        if self.error is not None:
            msg += ' ({0})'.format(self.error)
        return msg


class StandaloneBindError(Error):
    """The http-01 responder could not bind its port."""

    def __init__(self, socket_error: OSError, port: int) -> None:
        super().__init__(
            f"Problem binding to port {port}: {socket_error}")
        self.socket_error = socket_error
        self.port = port


class TimeoutError(Error):  # pylint: disable=redefined-builtin
    """Error for when polling a challenge or a certificate times out.

    :ivar str domain: Domain whose challenge did not finish, or ``None``
        when polling for a certificate.

    """
    def __init__(self, domain: Optional[str] = None, reason: str = 'polling budget exhausted'
                 ) -> None:
        self.domain = domain
        self.reason = reason
        super().__init__()

    def __str__(self) -> str:
        if self.domain is None:
            return 'Timed out: {0}'.format(self.reason)
        return 'Timed out for {0}: {1}'.format(self.domain, self.reason)


class IssuanceError(Error):
    """The authority refused the certificate request.

    :ivar error: Problem document returned by the authority.

    """
    def __init__(self, error: 'messages.Error') -> None:
        self.error = error
        super().__init__()

    def __str__(self) -> str:
        return 'Issuance failed: {0}'.format(self.error)


class AggregateAuthorizationError(Error):
    """One or more domains failed during a concurrent authorization.

    :ivar failures: Mapping from domain to the exception that ended its
        authorization.

    """
    def __init__(self, failures: Mapping[str, Exception]) -> None:
        self.failures = dict(failures)
        super().__init__()

    @property
    def domains(self) -> Tuple[str, ...]:
        """Failed domains, sorted."""
        return tuple(sorted(self.failures))

    def __str__(self) -> str:
        return 'Authorization failed for {0} domain(s): {1}'.format(
            len(self.failures), '; '.join(
                '{0}: {1}'.format(domain, self.failures[domain])
                for domain in self.domains))

    def __repr__(self) -> str:
        return '{0}(failures={1!r})'.format(self.__class__.__name__, self.failures)
