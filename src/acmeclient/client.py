"""ACME v1 client.

`Client` speaks the resources of the protocol; `ClientNetwork` signs and
sends the requests, keeping the anti-replay nonce in a `NonceSource`.

"""
import base64
import collections
import datetime
from email.utils import parsedate_tz
import http.client as http_client
import logging
import threading
import time
from typing import Any
from typing import Callable
from typing import Deque
from typing import Optional
from typing import Sequence
from typing import Set
from typing import Tuple
from typing import Union

from cryptography import x509
import josepy as jose
import requests
from requests.adapters import HTTPAdapter

from acmeclient import constants
from acmeclient import crypto_util
from acmeclient import errors
from acmeclient import jws
from acmeclient import messages

logger = logging.getLogger(__name__)


class Client:
    """Client for the resources listed in an ACME v1 directory.

    Every signed request goes through the single `.ClientNetwork` it was
    built with.

    :ivar messages.Directory directory:
    :ivar .ClientNetwork net:

    """

    def __init__(self, directory: messages.Directory, net: 'ClientNetwork') -> None:
        self.directory = directory
        self.net = net

    @classmethod
    def get_directory(cls, url: str, net: 'ClientNetwork') -> messages.Directory:
        """Fetch and check the directory at ``url``.

        :raises .DirectoryError: if the directory cannot be fetched, is
            not a JSON object, or lacks one of the required resources.

        """
        try:
            jobj = net.get(url).json()
        except (errors.Error, requests.exceptions.RequestException, ValueError) as error:
            raise errors.DirectoryError(
                'Unable to fetch directory from {0}: {1}'.format(url, error)) from error
        if not isinstance(jobj, dict):
            raise errors.DirectoryError(
                'Directory at {0} is not a JSON object'.format(url))
        try:
            directory = messages.Directory.from_json(jobj)
        except jose.DeserializationError as error:
            raise errors.DirectoryError(
                'Malformed directory at {0}: {1}'.format(url, error)) from error
        missing = [resource for resource in messages.Directory.required_resources()
                   if resource not in directory]
        if missing:
            raise errors.DirectoryError('Directory at {0} is missing: {1}'.format(
                url, ', '.join(missing)))
        return directory

    def register(self, new_reg: Optional[messages.NewRegistration] = None
                 ) -> messages.RegistrationResource:
        """Create the account of the network key.

        When the key is already registered the authority answers 409
        with the account URL, and that account is fetched and returned,
        so calling this twice gives the same account.

        :param .NewRegistration new_reg: Contact details; none by default.

        :raises .RegistrationError: if the authority refuses the
            registration.

        :rtype: `.RegistrationResource`

        """
        new_reg = messages.NewRegistration() if new_reg is None else new_reg
        try:
            response = self._post(self.directory[new_reg], new_reg)
            if 'Location' not in response.headers:
                raise errors.ClientError('new-reg response has no Location header')
            return self._regr_from_response(response)
        except errors.ConflictError as error:
            logger.info('Account key already registered at %s', error.location)
            existing = messages.RegistrationResource(
                body=messages.Registration(), uri=error.location)
        except (messages.Error, errors.ClientError) as error:
            raise errors.RegistrationError(error) from error
        try:
            return self.query_registration(existing)
        except (messages.Error, errors.ClientError) as error:
            raise errors.RegistrationError(error) from error

    def query_registration(self, regr: messages.RegistrationResource
                           ) -> messages.RegistrationResource:
        """Fetch the current state of the account, with an empty ``reg`` POST."""
        return self._send_recv_regr(regr, messages.UpdateRegistration())

    def update_registration(self, regr: messages.RegistrationResource,
                            update: Optional[messages.Registration] = None
                            ) -> messages.RegistrationResource:
        """Replace the contact details and agreement of the account.

        :param messages.RegistrationResource regr: Account to update.
        :param messages.Registration update: New body; ``regr.body`` by
            default. Its ``key`` is never sent.

        :rtype: `.RegistrationResource`

        """
        update = regr.body if update is None else update
        # The account key is fixed by the JWS.
        body = messages.UpdateRegistration(**{
            name: value for name, value in update.items() if name != 'key'})
        return self._send_recv_regr(regr, body=body)

    def agree_to_tos(self, regr: messages.RegistrationResource
                     ) -> messages.RegistrationResource:
        """Set the account ``agreement`` to ``regr.terms_of_service``."""
        return self.update_registration(
            regr.update(body=regr.body.update(agreement=regr.terms_of_service)))

    def request_challenges(self, identifier: messages.Identifier,
                           new_authzr_uri: Optional[str] = None
                           ) -> messages.AuthorizationResource:
        """Create an authorization for ``identifier``.

        :param str new_authzr_uri: Where to POST the new-authz request;
            the directory's ``new-authz`` by default.

        :returns: The authorization, with the challenges on offer.
        :rtype: `.AuthorizationResource`

        :raises .UnexpectedUpdate: if the authority answers for
            another identifier.

        """
        new_authz = messages.NewAuthorization(identifier=identifier)
        if new_authzr_uri is None:
            new_authzr_uri = self.directory[new_authz]
        response = self._post(new_authzr_uri, new_authz)
        if response.status_code != http_client.CREATED:
            logger.debug('Unexpected new-authz status %d', response.status_code)
        return self._authzr_from_response(response, identifier)

    def request_domain_challenges(self, domain: str) -> messages.AuthorizationResource:
        """`request_challenges` for the ``dns`` identifier ``domain``."""
        return self.request_challenges(messages.Identifier(
            typ=messages.IDENTIFIER_FQDN, value=domain))

    def answer_challenge(self, challb: messages.ChallengeBody,
                         response: Any) -> messages.ChallengeResource:
        """POST ``response`` to the challenge, asking for its validation.

        :param .ChallengeBody challb: Challenge being answered.
        :param .ChallengeResponse response:

        :returns: The challenge as updated by the authority.
        :rtype: `.ChallengeResource`

        :raises .UnexpectedUpdate: if another challenge comes back.

        """
        resp = self._post(challb.uri, response)
        authzr_uri = resp.links.get('up', {}).get('url')
        challr = messages.ChallengeResource(
            authzr_uri=authzr_uri,
            body=messages.ChallengeBody.from_json(resp.json()))
        if challr.uri != challb.uri:
            raise errors.UnexpectedUpdate(challr.uri)
        return challr

    def poll_challenge(self, challb: messages.ChallengeBody
                       ) -> Tuple[messages.ChallengeBody, requests.Response]:
        """Fetch the current state of a challenge.

        :rtype: (`.ChallengeBody`, `requests.Response`)

        :raises .UnexpectedUpdate: if another challenge comes back.

        """
        response = self.net.get(challb.uri)
        updated_challb = messages.ChallengeBody.from_json(response.json())
        if updated_challb.uri != challb.uri:
            raise errors.UnexpectedUpdate(updated_challb.uri)
        return updated_challb, response

    def poll(self, authzr: messages.AuthorizationResource
             ) -> Tuple[messages.AuthorizationResource, requests.Response]:
        """Fetch the current state of an authorization.

        :rtype: (`.AuthorizationResource`, `requests.Response`)

        """
        response = self.net.get(authzr.uri)
        updated_authzr = self._authzr_from_response(
            response, authzr.body.identifier, authzr.uri, authzr.new_cert_uri)
        return updated_authzr, response

    def request_issuance(self, csr_pem: bytes,
                         authzrs: Sequence[messages.AuthorizationResource],
                         max_attempts: int = constants.CERTIFICATE_POLL_MAX_ATTEMPTS,
                         mintime: int = constants.CERTIFICATE_POLL_MINTIME
                         ) -> messages.CertificateResource:
        """Request a certificate for ``csr_pem``.

        An authority may accept the request before the certificate is
        ready. Its ``Location`` is then polled, waiting as long as
        ``Retry-After`` says, or ``mintime`` seconds.

        :param bytes csr_pem: PEM-encoded CSR.
        :param authzrs: Valid authorizations of every name in the CSR.
        :param int max_attempts: Polls before giving up.
        :param int mintime: Seconds between polls without ``Retry-After``.

        :raises .IssuanceError: if the authority rejects the request.
        :raises .TimeoutError: if the certificate is not available after
            ``max_attempts`` polls.

        :rtype: `.messages.CertificateResource`

        """
        assert authzrs, "Authorizations list is empty"
        logger.debug("Requesting issuance...")

        req = messages.CertificateRequest(csr=x509.load_pem_x509_csr(csr_pem))
        try:
            response = self._post(self.directory[req], req,
                                  headers={'Accept': constants.DER_CONTENT_TYPE})
        except messages.Error as error:
            raise errors.IssuanceError(error) from error

        uri = response.headers.get('Location')
        if uri is None:
            raise errors.ClientError('new-cert response has no Location header')
        cert_chain_uri = response.links.get('up', {}).get('url')

        if not response.content:
            response = self._poll_certificate(uri, response, max_attempts, mintime)
            cert_chain_uri = response.links.get('up', {}).get('url', cert_chain_uri)

        return messages.CertificateResource(
            uri=uri, cert_chain_uri=cert_chain_uri, authzrs=tuple(authzrs),
            body=self._load_der(response))

    def _poll_certificate(self, uri: str, response: requests.Response,
                          max_attempts: int, mintime: int) -> requests.Response:
        for attempt in range(max_attempts):
            when = self.retry_after(response, default=mintime)
            seconds = (when - datetime.datetime.now(datetime.timezone.utc)).total_seconds()
            if seconds > 0:
                logger.debug('Sleeping for %d seconds', seconds)
                time.sleep(seconds)
            try:
                response = self.net.get(uri, content_type=constants.DER_CONTENT_TYPE,
                                        headers={'Accept': constants.DER_CONTENT_TYPE})
            except messages.Error as error:
                raise errors.IssuanceError(error) from error
            except (errors.ClientError, requests.exceptions.RequestException) as error:
                logger.debug('Certificate poll %d failed: %s', attempt + 1, error)
                continue
            if response.content:
                return response
        raise errors.TimeoutError(
            reason='certificate not available after {0} attempts'.format(max_attempts))

    def fetch_chain(self, certr: messages.CertificateResource) -> Optional[x509.Certificate]:
        """Issuer certificate of ``certr``, ``None`` without an ``up`` link."""
        if certr.cert_chain_uri is None:
            return None
        response = self.net.get(certr.cert_chain_uri,
                                content_type=constants.DER_CONTENT_TYPE,
                                headers={'Accept': constants.DER_CONTENT_TYPE})
        return self._load_der(response)

    def revoke(self, cert: x509.Certificate, rsn: Optional[int] = None) -> None:
        """Revoke ``cert``.

        :param int rsn: CRL reason code.

        :raises .ClientError: unless the authority answers 200.

        """
        response = self._post(self.directory[messages.Revocation],
                              messages.Revocation(certificate=cert, reason=rsn))
        if response.status_code != http_client.OK:
            raise errors.ClientError(
                'Revocation answered with HTTP {0}'.format(response.status_code))

    @classmethod
    def retry_after(cls, response: requests.Response, default: int) -> datetime.datetime:
        """Time at which a pending certificate should be polled again.

        ``Retry-After`` is either a number of seconds or an HTTP date.
        A missing or unparsable header means ``default`` seconds.

        :param requests.Response response: Response to the previous poll.
        :param int default: Delay in seconds used without a usable header.

        :returns: Time of the next poll, in UTC.
        :rtype: `datetime.datetime`

        """
        now = datetime.datetime.now(datetime.timezone.utc)
        retry_after = response.headers.get('Retry-After', str(default))
        try:
            seconds = int(retry_after)
        except ValueError:
            when = parsedate_tz(retry_after)
            if when is not None:
                offset = datetime.timedelta(seconds=when[9] or 0)
                try:
                    return datetime.datetime(
                        *when[:6], tzinfo=datetime.timezone.utc) - offset
                except (ValueError, OverflowError):
                    pass
            seconds = default

        return now + datetime.timedelta(seconds=seconds)

    @classmethod
    def _load_der(cls, response: requests.Response) -> x509.Certificate:
        try:
            return crypto_util.load_certificate(response.content, crypto_util.Format.DER)
        except ValueError as error:
            raise errors.ClientError(
                'Unable to parse certificate: {0}'.format(error)) from error

    @classmethod
    def _regr_from_response(cls, response: requests.Response, uri: Optional[str] = None,
                            new_authzr_uri: Optional[str] = None,
                            terms_of_service: Optional[str] = None
                            ) -> messages.RegistrationResource:
        if 'terms-of-service' in response.links:
            terms_of_service = response.links['terms-of-service']['url']
        if 'next' in response.links:
            new_authzr_uri = response.links['next']['url']

        return messages.RegistrationResource(
            body=messages.Registration.from_json(response.json()),
            uri=response.headers.get('Location', uri),
            new_authzr_uri=new_authzr_uri,
            terms_of_service=terms_of_service)

    def _send_recv_regr(self, regr: messages.RegistrationResource,
                        body: messages.Registration) -> messages.RegistrationResource:
        response = self._post(regr.uri, body)
        return self._regr_from_response(
            response, uri=regr.uri,
            new_authzr_uri=regr.new_authzr_uri,
            terms_of_service=regr.terms_of_service)

    def _authzr_from_response(self, response: requests.Response,
                              identifier: Optional[messages.Identifier] = None,
                              uri: Optional[str] = None,
                              new_cert_uri: Optional[str] = None
                              ) -> messages.AuthorizationResource:
        if 'next' in response.links:
            new_cert_uri = response.links['next']['url']
        authzr = messages.AuthorizationResource(
            body=messages.Authorization.from_json(response.json()),
            uri=response.headers.get('Location', uri),
            new_cert_uri=new_cert_uri)
        if identifier is not None and authzr.body.identifier != identifier:  # pylint: disable=no-member
            raise errors.UnexpectedUpdate(authzr)
        return authzr

    def _post(self, *args: Any, **kwargs: Any) -> requests.Response:
        """Wrapper around self.net.post that adds the new-nonce URL.

        Authorities without a ``new-nonce`` resource hand out nonces on
        a HEAD request to the target URL instead.

        """
        kwargs.setdefault('new_nonce_url', getattr(self.directory, 'new_nonce', None))
        return self.net.post(*args, **kwargs)


class NonceSource:
    """Holder of the most recent anti-replay nonce.

    A single slot shared by every request signed with one
    `.ClientNetwork`. Taking a nonce empties the slot, so a value is
    handed out at most once, and a value that was handed out is never
    stored again while it is among the last ``history`` consumed ones.

    """

    def __init__(self, history: int = constants.NONCE_HISTORY) -> None:
        self._lock = threading.Lock()
        self._nonce: Optional[bytes] = None
        self._used: Set[bytes] = set()
        self._history: Deque[bytes] = collections.deque(maxlen=history)

    def __bool__(self) -> bool:
        with self._lock:
            return self._nonce is not None

    def add(self, nonce: bytes) -> bool:
        """Store ``nonce``, replacing any unused one.

        :returns: ``False`` if ``nonce`` was already consumed and has
            been ignored.

        """
        with self._lock:
            if nonce in self._used:
                logger.debug('Ignoring already used nonce: %r', nonce)
                return False
            self._nonce = nonce
            return True

    def consume(self, fetch: Callable[[], bytes]) -> bytes:
        """Take the held nonce, calling ``fetch`` for a fresh one if empty.

        The lock is held for the whole call, so concurrent callers never
        take the same value.

        :raises .NonceError: if ``fetch`` returns a nonce that was
            already consumed.

        """
        with self._lock:
            nonce, self._nonce = self._nonce, None
            if nonce is None:
                logger.debug('Requesting fresh nonce')
                nonce = fetch()
                if nonce in self._used:
                    raise errors.NonceError(
                        'Authority returned an already used nonce: {0!r}'.format(nonce))
            self._remember(nonce)
            return nonce

    def _remember(self, nonce: bytes) -> None:
        if len(self._history) == self._history.maxlen:
            self._used.discard(self._history.popleft())
        self._history.append(nonce)
        self._used.add(nonce)


class ClientNetwork:
    """Sends the HTTP requests of one account.

    POST bodies are signed as JWS with the account key, using nonces from
    the shared `NonceSource`. Every response is checked for an ACME error
    document before it is returned.

    :param josepy.JWK key: Account private key.
    :param josepy.JWASignature alg: Signature algorithm; derived from
        ``key`` when not given.
    :param bool verify_ssl: Whether to verify TLS certificates.
    :param str user_agent: ``User-Agent`` header value.
    :param int timeout: Default request timeout in seconds.

    """
    JSON_CONTENT_TYPE = 'application/json'
    JOSE_CONTENT_TYPE = 'application/jose+json'
    JSON_ERROR_CONTENT_TYPE = 'application/problem+json'
    REPLAY_NONCE_HEADER = 'Replay-Nonce'

    def __init__(self, key: jose.JWK, alg: Optional[jose.JWASignature] = None,
                 verify_ssl: bool = True, user_agent: str = constants.USER_AGENT,
                 timeout: int = constants.DEFAULT_NETWORK_TIMEOUT) -> None:
        self.key = key
        self.alg = jws.alg_for_key(key) if alg is None else alg
        self.verify_ssl = verify_ssl
        self.nonces = NonceSource()
        self.user_agent = user_agent
        self.session = requests.Session()
        self._default_timeout = timeout
        adapter = HTTPAdapter()

        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __del__(self) -> None:
        # Errors from close() at interpreter shutdown are not reported.
        try:
            self.close()
        except Exception:  # pylint: disable=broad-except
            pass

    def _wrap_in_jws(self, obj: jose.JSONDeSerializable, nonce: bytes, url: str) -> str:
        jobj = obj.json_dumps(indent=2).encode()
        logger.debug('JWS payload:\n%s', jobj)
        return jws.JWS.sign(jobj, key=self.key, alg=self.alg,
                            nonce=nonce, url=url).json_dumps(indent=2)

    def sign(self, obj: jose.JSONDeSerializable, url: str,
             new_nonce_url: Optional[str] = None) -> str:
        """Sign ``obj`` for ``url`` with a fresh nonce.

        The nonce is consumed whether or not the request is sent.

        :raises .SigningError: if no nonce can be obtained or signing
            fails.

        :returns: JWS in its JSON serialization.
        :rtype: str

        """
        try:
            nonce = self.nonces.consume(lambda: self._fetch_nonce(url, new_nonce_url))
        except (errors.Error, requests.exceptions.RequestException) as error:
            raise errors.SigningError(
                'Unable to obtain a nonce for {0}: {1}'.format(url, error)) from error
        try:
            return self._wrap_in_jws(obj, nonce, url)
        except (TypeError, ValueError) as error:
            raise errors.SigningError(
                'Unable to sign request for {0}: {1}'.format(url, error)) from error

    @classmethod
    def _check_response(cls, response: requests.Response,
                        content_type: Optional[str] = None) -> requests.Response:
        """Turn an unsuccessful ``response`` into an exception.

        A JSON body is accepted whatever ``Content-Type`` the authority
        labels it with; the mismatch is only logged.

        :param str content_type: Expected type. When it is JSON, a
            successful response without a JSON body is an error.

        :raises .ConflictError: on HTTP 409.
        :raises .messages.Error: if the body is an ACME error document.
        :raises .ClientError: for any other unsuccessful response.

        """
        response_ct = response.headers.get('Content-Type')
        # Media type without parameters, e.g. "; charset=utf-8".
        if response_ct:
            response_ct = response_ct.split(';')[0].strip()
        try:
            jobj = response.json()
        except ValueError:
            jobj = None

        if response.status_code == http_client.CONFLICT:
            raise errors.ConflictError(response.headers.get('Location', 'UNKNOWN-LOCATION'))

        if not response.ok:
            if jobj is None:
                raise errors.ClientError(response)
            if response_ct != cls.JSON_ERROR_CONTENT_TYPE:
                logger.debug('Error document sent as %r', response_ct)
            try:
                error = messages.Error.from_json(jobj)
            except jose.DeserializationError as decode_error:
                raise errors.ClientError((response, decode_error))
            raise error

        if jobj is not None and response_ct != cls.JSON_CONTENT_TYPE:
            logger.debug('JSON body sent as %r', response_ct)
        if content_type == cls.JSON_CONTENT_TYPE and jobj is None:
            raise errors.ClientError(f'Unexpected response Content-Type: {response_ct}')

        return response

    def _send_request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:
        """Send a request through the session, logging both directions.

        ``verify_ssl``, the ``User-Agent`` and the default timeout are
        applied; other keyword arguments go to `requests.Session.request`.

        :raises requests.exceptions.RequestException: on transport errors.

        """
        if method == "POST":
            logger.debug('Sending POST request to %s:\n%s',
                         url, kwargs['data'])
        else:
            logger.debug('Sending %s request to %s.', method, url)
        kwargs['verify'] = self.verify_ssl
        kwargs.setdefault('headers', {})
        kwargs['headers'].setdefault('User-Agent', self.user_agent)
        kwargs.setdefault('timeout', self._default_timeout)
        response = self.session.request(method, url, *args, **kwargs)

        # Bodies requested with an Accept header are DER; log them base64.
        debug_content: Union[bytes, str]
        if "Accept" in kwargs["headers"]:
            debug_content = base64.b64encode(response.content)
        else:
            response.encoding = "utf-8"
            debug_content = response.text
        logger.debug('Received response:\nHTTP %d\n%s\n\n%s',
                     response.status_code,
                     "\n".join("{0}: {1}".format(k, v)
                               for k, v in response.headers.items()),
                     debug_content)
        return response

    def head(self, *args: Any, **kwargs: Any) -> requests.Response:
        """Send a HEAD request and store its nonce.

        The response is not checked; any status is returned as is.

        """
        response = self._send_request('HEAD', *args, **kwargs)
        self._add_nonce(response)
        return response

    def get(self, url: str, content_type: str = JSON_CONTENT_TYPE,
            **kwargs: Any) -> requests.Response:
        """Send GET request and check response."""
        response = self._send_request('GET', url, **kwargs)
        self._add_nonce(response)
        return self._check_response(response, content_type=content_type)

    def _decode_nonce(self, response: requests.Response) -> Optional[bytes]:
        if self.REPLAY_NONCE_HEADER not in response.headers:
            return None
        nonce = response.headers[self.REPLAY_NONCE_HEADER]
        try:
            return jws.Header._fields['nonce'].decode(nonce)  # pylint: disable=protected-access
        except jose.DeserializationError as error:
            raise errors.BadNonce(nonce, error)

    def _add_nonce(self, response: requests.Response) -> bool:
        """Store the nonce of ``response``, successful or not.

        :returns: ``True`` if the response carried a nonce.

        """
        nonce = self._decode_nonce(response)
        if nonce is None:
            return False
        logger.debug('Storing nonce: %s', response.headers[self.REPLAY_NONCE_HEADER])
        self.nonces.add(nonce)
        return True

    def _fetch_nonce(self, url: str, new_nonce_url: Optional[str]) -> bytes:
        if new_nonce_url is None:
            response = self._send_request('HEAD', url)
        else:
            response = self._check_response(
                self._send_request('HEAD', new_nonce_url), content_type=None)
        nonce = self._decode_nonce(response)
        if nonce is None:
            raise errors.MissingNonce(response.headers)
        return nonce

    def post(self, *args: Any, **kwargs: Any) -> requests.Response:
        """Sign and POST ``obj`` to ``url``, then check the response.

        A ``badNonce`` error or a failure to sign is retried once with a
        new nonce.

        """
        try:
            return self._post_once(*args, **kwargs)
        except messages.Error as error:
            if error.code == 'badNonce':
                logger.debug('Retrying request after error:\n%s', error)
                return self._post_once(*args, **kwargs)
            raise
        except errors.SigningError as error:
            logger.debug('Retrying request after signing error: %s', error)
            return self._post_once(*args, **kwargs)

    def _post_once(self, url: str, obj: jose.JSONDeSerializable,
                   content_type: str = JOSE_CONTENT_TYPE, **kwargs: Any) -> requests.Response:
        new_nonce_url = kwargs.pop('new_nonce_url', None)
        data = self.sign(obj, url, new_nonce_url)
        kwargs.setdefault('headers', {})
        kwargs['headers'].setdefault('Content-Type', content_type)
        response = self._send_request('POST', url, data=data, **kwargs)
        has_nonce = self._add_nonce(response)
        response = self._check_response(response, content_type=content_type)
        if not has_nonce:
            raise errors.MissingNonce(response.headers)
        return response
