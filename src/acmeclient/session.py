"""High level ACME session.

Ties together the directory, the account, the challenge solvers and
issuance, for callers that just want a certificate for some domains.

"""
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Optional
from typing import Sequence

import josepy as jose

from acmeclient import auth_handler
from acmeclient import client as acme_client
from acmeclient import constants
from acmeclient import crypto_util
from acmeclient import errors
from acmeclient import interfaces
from acmeclient import messages
from acmeclient import solvers as acme_solvers

logger = logging.getLogger(__name__)


class IssuedCertificate(jose.ImmutableMap):
    """Certificate obtained by `Session.obtain_certificate`.

    :ivar tuple domains: Domains, in the order they were requested.
    :ivar .CertificateResource certr: Certificate Resource.
    :ivar bytes cert_pem: Certificate, PEM encoded.
    :ivar bytes chain_pem: Issuer chain, PEM encoded, empty if the
        authority did not link one.
    :ivar bytes key_pem: Private key of the certificate, PEM encoded.

    """
    __slots__ = ('domains', 'certr', 'cert_pem', 'chain_pem', 'key_pem')


class Session:
    """ACME session acting for one `.User`.

    The directory is fetched once, on construction. Every request of the
    session, including the ones made by its solvers, is signed by the
    single `.ClientNetwork` in `net`.

    :ivar .User user: Account holder.
    :ivar int key_size: Size of the RSA keys generated for certificates.
    :ivar .ClientNetwork net: Signer shared by the whole session.
    :ivar .Client client: ACME client API.
    :ivar dict solvers: `.ChallengeSolver` for each challenge type.
    :ivar .AuthHandler auth_handler:

    """

    def __init__(self, directory_url: str, user: interfaces.User,
                 key_size: int = constants.DEFAULT_KEY_SIZE,
                 port: Optional[int] = None,
                 pref_challs: Optional[Iterable[str]] = None,
                 net: Optional[acme_client.ClientNetwork] = None,
                 **kwargs: Any) -> None:
        """Initialize.

        :param str directory_url: URL of the authority's directory.
        :param .User user: Account holder.
        :param int key_size: Size of the certificate keys.
        :param int port: Port the http-01 responder listens on.
        :param list pref_challs: Challenge types in order of preference.
        :param .ClientNetwork net: Network to use instead of one built
            from ``user.key``.
        :param kwargs: Other settings from `.constants.SESSION_DEFAULTS`
            (``http01_address``, ``verify_ssl``, ``user_agent``,
            ``network_timeout``).

        :raises .DirectoryError: if the directory cannot be fetched.

        """
        unknown = sorted(set(kwargs) - set(constants.SESSION_DEFAULTS))
        if unknown:
            raise TypeError('Unexpected session settings: {0}'.format(', '.join(unknown)))
        config: Dict[str, Any] = dict(constants.SESSION_DEFAULTS)
        config.update(kwargs)
        config['key_size'] = key_size
        if port is not None:
            config['http01_port'] = port
        if pref_challs is not None:
            config['pref_challs'] = list(pref_challs)

        self.user = user
        self.key_size = config['key_size']
        if net is None:
            net = acme_client.ClientNetwork(
                user.key, verify_ssl=config['verify_ssl'],
                user_agent=config['user_agent'], timeout=config['network_timeout'])
        self.net = net

        self.directory = acme_client.Client.get_directory(directory_url, self.net)
        self.client = acme_client.Client(self.directory, self.net)
        self.solvers: Dict[str, acme_solvers.ChallengeSolver] = {
            typ: solver_cls(self.client, port=config['http01_port'],
                            address=config['http01_address'])
            for typ, solver_cls in acme_solvers.SOLVERS.items()
        }
        self.auth_handler = auth_handler.AuthHandler(
            self.client, self.solvers, pref_challs=config['pref_challs'])

    def register(self) -> messages.RegistrationResource:
        """Register the account of `user`, or fetch it if it exists.

        The result is stored in ``user.registration``.

        :raises .RegistrationError:

        """
        email = self.user.email or None
        new_reg = messages.NewRegistration.from_data(email=email)
        regr = self.client.register(new_reg)
        logger.info('Account registered at %s', regr.uri)
        self.user.registration = regr
        return regr

    def agree_to_tos(self) -> messages.RegistrationResource:
        """Agree to the terms of service of the registered account.

        The terms linked from the registration are preferred; the ones
        advertised in the directory metadata are used otherwise.

        """
        regr = self._registration()
        if regr.terms_of_service is None:
            terms_of_service = self.directory.meta.terms_of_service
            if terms_of_service is None:
                logger.warning('Authority did not link terms of service to agree to')
                return regr
            regr = regr.update(terms_of_service=terms_of_service)
        regr = self.client.agree_to_tos(regr)
        self.user.registration = regr
        return regr

    def obtain_certificate(self, domains: Sequence[str],
                           timeout: Optional[float] = None) -> IssuedCertificate:
        """Obtain a certificate for ``domains``.

        A new private key is generated for the certificate. The first
        domain becomes the subject common name.

        :param list domains: Domain names, without duplicates.
        :param float timeout: Seconds allowed for authorizing all domains.

        :raises ValueError: if ``domains`` is empty or has duplicates.
        :raises .AggregateAuthorizationError: if a domain could not be
            authorized.
        :raises .IssuanceError: if the authority refuses to issue.

        """
        domains = list(domains)
        if not domains:
            raise ValueError('No domains to obtain a certificate for')
        self._registration()

        authzrs = self.auth_handler.handle_authorizations(domains, timeout=timeout)

        key_pem = crypto_util.make_private_key(self.key_size)
        csr_pem = crypto_util.make_csr(key_pem, domains)
        logger.info('Requesting certificate for %s', ', '.join(domains))
        certr = self.client.request_issuance(csr_pem, authzrs)
        chain = self.client.fetch_chain(certr)
        if chain is None:
            logger.warning('Authority did not link an issuer certificate')

        return IssuedCertificate(
            domains=tuple(domains), certr=certr,
            cert_pem=crypto_util.dump_certificate(certr.body),
            chain_pem=b'' if chain is None else crypto_util.dump_certificate(chain),
            key_pem=key_pem)

    def revoke_certificate(self, cert_pem: bytes, rsn: Optional[int] = None) -> None:
        """Revoke a certificate issued to this account.

        :param bytes cert_pem: Certificate, PEM encoded.
        :param int rsn: Revocation reason code.

        """
        cert = crypto_util.load_certificate(cert_pem)
        self.client.revoke(cert, rsn)
        logger.info('Certificate revoked')

    def _registration(self) -> messages.RegistrationResource:
        if self.user.registration is None:
            raise errors.Error('Account is not registered, call register() first')
        return self.user.registration
