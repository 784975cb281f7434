"""ACME v1 protocol messages.

Request bodies carry a ``resource`` member naming their endpoint, and
the endpoints themselves are found in the `Directory`.

"""
from collections.abc import Hashable
import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import MutableMapping
from typing import Optional
from typing import Tuple
from typing import Type
from typing import TypeVar
from typing import Union

from cryptography import x509
import josepy as jose

from acmeclient import challenges
from acmeclient import errors
from acmeclient import fields
from acmeclient import util

ERROR_PREFIX = "urn:acme:error:"
IETF_ERROR_PREFIX = "urn:ietf:params:acme:error:"

ERROR_CODES = {
    'badCSR': 'The CSR is unacceptable (e.g., due to a short key)',
    'badNonce': 'The client sent an unacceptable anti-replay nonce',
    'connection': 'The server could not connect to the domain to validate it',
    'invalidEmail': 'The provided email for a registration was invalid',
    'malformed': 'The request message was malformed',
    'rateLimited': 'There were too many requests of a given type',
    'rejectedIdentifier': 'The server will not issue for the identifier',
    'serverInternal': 'The server experienced an internal error',
    'unauthorized': 'The client lacks sufficient authorization',
    'unknownHost': 'The server could not resolve a domain name',
}
"""Problem codes an authority may report, with their descriptions."""


def is_acme_error(err: BaseException) -> bool:
    """Whether ``err`` is a problem document with an ACME error type."""
    if isinstance(err, Error) and err.typ is not None:
        return err.typ.startswith((ERROR_PREFIX, IETF_ERROR_PREFIX))
    return False


class Error(jose.JSONObjectWithFields, errors.Error):
    """Problem document (RFC 7807) returned by the authority.

    It is raised as is by `.ClientNetwork` for any error response with
    a problem body.

    :ivar str typ: Problem type URN.
    :ivar str title:
    :ivar str detail: Human readable explanation.

    """
    typ: str = jose.field('type', omitempty=True, default='about:blank')
    title: str = jose.field('title', omitempty=True)
    detail: str = jose.field('detail', omitempty=True)

    @classmethod
    def with_code(cls, code: str, **kwargs: Any) -> 'Error':
        """Problem of type ``urn:acme:error:<code>``.

        :raises ValueError: if ``code`` is not in `ERROR_CODES`.

        """
        if code not in ERROR_CODES:
            raise ValueError("Unknown ACME error code: {0}".format(code))
        return cls(typ=ERROR_PREFIX + code, **kwargs)

    @property
    def code(self) -> Optional[str]:
        """Last segment of an ACME problem type, ``None`` for other types."""
        if not is_acme_error(self):
            return None
        return str(self.typ).rsplit(':', maxsplit=1)[-1]

    @property
    def description(self) -> Optional[str]:
        """Description of a known `code`."""
        return ERROR_CODES.get(self.code) if self.code is not None else None

    def __str__(self) -> str:
        return b' :: '.join(
            part.encode('ascii', 'backslashreplace') for part in
            (self.typ, self.description, self.detail, self.title)
            if part is not None).decode()


class _Constant(jose.JSONDeSerializable, Hashable):
    """String constant; decoding an unlisted value fails."""
    __slots__ = ('name',)
    POSSIBLE_NAMES: Dict[str, '_Constant'] = NotImplemented

    def __init__(self, name: str) -> None:
        super().__init__()
        self.POSSIBLE_NAMES[name] = self  # pylint: disable=unsupported-assignment-operation
        self.name = name

    def to_partial_json(self) -> str:
        return self.name

    @classmethod
    def from_json(cls, jobj: str) -> '_Constant':
        if jobj not in cls.POSSIBLE_NAMES:  # pylint: disable=unsupported-membership-test
            raise jose.DeserializationError(
                '{0} not recognized: {1!r}'.format(cls.__name__, jobj))
        return cls.POSSIBLE_NAMES[jobj]

    def __repr__(self) -> str:
        return '{0}({1})'.format(self.__class__.__name__, self.name)

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, type(self)) and other.name == self.name

    def __hash__(self) -> int:
        return hash((self.__class__, self.name))


class Status(_Constant):
    """Status of an authorization or a challenge."""
    POSSIBLE_NAMES: Dict[str, _Constant] = {}


STATUS_PENDING = Status('pending')
STATUS_PROCESSING = Status('processing')
STATUS_VALID = Status('valid')
STATUS_INVALID = Status('invalid')
STATUS_EXPIRED = Status('expired')
STATUS_REVOKED = Status('revoked')
STATUS_DEACTIVATED = Status('deactivated')

TERMINAL_STATUSES = frozenset([STATUS_VALID, STATUS_INVALID, STATUS_EXPIRED,
                               STATUS_REVOKED, STATUS_DEACTIVATED])
"""Statuses after which polling stops."""


class IdentifierType(_Constant):
    """Kind of identifier being authorized."""
    POSSIBLE_NAMES: Dict[str, _Constant] = {}


IDENTIFIER_FQDN = IdentifierType('dns')


class Identifier(jose.JSONObjectWithFields):
    """Identifier to authorize, a domain name for ``dns``.

    :ivar IdentifierType typ:
    :ivar str value:

    """
    typ: IdentifierType = jose.field('type', decoder=IdentifierType.from_json)
    value: str = jose.field('value')


R = TypeVar('R', bound=jose.JSONObjectWithFields)


class Directory(jose.JSONDeSerializable):
    """Endpoints of the authority.

    Maps resource types (``new-reg``, ``new-authz``, ``new-cert``,
    ``revoke-cert``) to endpoint URLs. Attribute access replaces ``_``
    with ``-``, so ``directory.new_reg`` is ``directory['new-reg']``.

    """

    _REGISTERED_TYPES: Dict[str, Type[jose.JSONObjectWithFields]] = {}

    class Meta(jose.JSONObjectWithFields):
        """Optional ``meta`` member of the directory."""
        terms_of_service: str = jose.field('terms-of-service', omitempty=True)
        website: str = jose.field('website', omitempty=True)
        caa_identities: List[str] = jose.field('caa-identities', omitempty=True)

    @classmethod
    def _canon_key(cls, key: Union[str, jose.JSONObjectWithFields,
                                   Type[jose.JSONObjectWithFields]]) -> str:
        if isinstance(key, str):
            return key
        return key.resource_type  # type: ignore[union-attr]

    @classmethod
    def register(cls, resource_body_cls: Type[R]) -> Type[R]:
        """Class decorator declaring a request body as a directory resource."""
        resource_type = resource_body_cls.resource_type  # type: ignore[attr-defined]
        assert resource_type not in cls._REGISTERED_TYPES
        cls._REGISTERED_TYPES[resource_type] = resource_body_cls
        return resource_body_cls

    @classmethod
    def required_resources(cls) -> Tuple[str, ...]:
        """Resource types every directory must provide."""
        return tuple(sorted(cls._REGISTERED_TYPES))

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        canon_jobj = util.map_keys(jobj, self._canon_key)
        self._jobj = canon_jobj

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name.replace('_', '-')]
        except KeyError as error:
            raise AttributeError(str(error))

    def __getitem__(self, name: Union[str, jose.JSONObjectWithFields,
                                      Type[jose.JSONObjectWithFields]]) -> Any:
        try:
            return self._jobj[self._canon_key(name)]
        except KeyError:
            raise KeyError('Directory field "' + self._canon_key(name) + '" not found')

    def __contains__(self, name: Any) -> bool:
        return self._canon_key(name) in self._jobj

    def to_partial_json(self) -> Dict[str, Any]:
        return self._jobj

    @classmethod
    def from_json(cls, jobj: MutableMapping[str, Any]) -> 'Directory':
        jobj['meta'] = cls.Meta.from_json(jobj.pop('meta', {}))
        return cls(jobj)


class Resource(jose.JSONObjectWithFields):
    """Body of a response together with what its headers told.

    :ivar acmeclient.messages.ResourceBody body:

    """
    body: "ResourceBody" = jose.field('body')


class ResourceWithURI(Resource):
    """Resource with its own URL, from the ``Location`` header.

    :ivar str uri:

    """
    uri: str = jose.field('uri')


class ResourceBody(jose.JSONObjectWithFields):
    """JSON body of a resource."""


class Registration(ResourceBody):
    """Account as sent to and returned by the authority.

    :ivar jose.JWK key: Account public key, filled in by the authority.
    :ivar tuple contact: ``mailto:`` URIs.
    :ivar str agreement: Terms of service URL the account agreed to.
    :ivar str authorizations: URL listing the account's authorizations.
    :ivar str certificates: URL listing the account's certificates.

    """
    # The authority takes the key from the JWS header.
    key: jose.JWK = jose.field('key', omitempty=True, decoder=jose.JWK.from_json)
    contact: Tuple[str, ...] = jose.field('contact', omitempty=True, default=())
    agreement: str = jose.field('agreement', omitempty=True)
    authorizations: str = jose.field('authorizations', omitempty=True)
    certificates: str = jose.field('certificates', omitempty=True)

    email_prefix = 'mailto:'

    @classmethod
    def from_data(cls, email: Optional[str] = None, **kwargs: Any) -> 'Registration':
        """Body with a ``mailto:`` contact per comma separated address in ``email``."""
        contact = list(kwargs.pop('contact', ()))
        if email is not None:
            contact.extend(cls.email_prefix + address.strip() for address in email.split(','))
        return cls(contact=tuple(contact), **kwargs)


@Directory.register
class NewRegistration(Registration):
    """Body of a new-reg request."""
    resource_type = 'new-reg'
    resource: str = fields.resource(resource_type)


class UpdateRegistration(Registration):
    """Body POSTed to the account URL, to fetch or change the account."""
    resource_type = 'reg'
    resource: str = fields.resource(resource_type)


class RegistrationResource(ResourceWithURI):
    """Registered account.

    :ivar acmeclient.messages.Registration body:
    :ivar str new_authzr_uri: ``next`` link, where to request authorizations.
    :ivar str terms_of_service: ``terms-of-service`` link.

    """
    body: Registration = jose.field('body', decoder=Registration.from_json)
    new_authzr_uri: str = jose.field('new_authzr_uri', omitempty=True)
    terms_of_service: str = jose.field('terms_of_service', omitempty=True)


class ChallengeBody(ResourceBody):
    """Challenge as listed in an authorization.

    Named ``challb`` in this package, to tell it from the wrapped
    ``chall``. Attributes of the wrapped challenge can be read
    directly: ``challb.token`` is ``challb.chall.token``.

    :ivar acmeclient.challenges.Challenge chall: Wrapped challenge.
    :ivar str uri: Location of the challenge.
    :ivar acmeclient.messages.Status status:
    :ivar datetime.datetime validated:
    :ivar messages.Error error:

    """
    __slots__ = ('chall',)
    uri: str = jose.field('uri')
    status: Status = jose.field('status', decoder=Status.from_json,
                                omitempty=True, default=STATUS_PENDING)
    validated: datetime.datetime = fields.rfc3339('validated', omitempty=True)
    error: Error = jose.field('error', decoder=Error.from_json,
                              omitempty=True, default=None)

    def to_partial_json(self) -> Dict[str, Any]:
        jobj = super().to_partial_json()
        jobj.update(self.chall.to_partial_json())
        return jobj

    @classmethod
    def fields_from_json(cls, jobj: Mapping[str, Any]) -> Dict[str, Any]:
        jobj_fields = super().fields_from_json(jobj)
        jobj_fields['chall'] = challenges.Challenge.from_json(jobj)
        return jobj_fields

    def __getattr__(self, name: str) -> Any:
        return getattr(self.chall, name)


class ChallengeResource(Resource):
    """Challenge returned after answering it.

    :ivar acmeclient.messages.ChallengeBody body:
    :ivar str authzr_uri: ``up`` link, back to the authorization.

    """
    body: ChallengeBody = jose.field('body', decoder=ChallengeBody.from_json)
    authzr_uri: str = jose.field('authzr_uri', omitempty=True)

    @property
    def uri(self) -> str:
        """The URL of the challenge body."""
        return self.body.uri  # pylint: disable=no-member


class Authorization(ResourceBody):
    """Authorization of one identifier.

    :ivar acmeclient.messages.Identifier identifier:
    :ivar list challenges: `list` of `.ChallengeBody`
    :ivar tuple combinations: Challenge combinations (`tuple` of `tuple`
        of `int`, as opposed to `list` of `list` on the wire).
    :ivar acmeclient.messages.Status status:
    :ivar datetime.datetime expires:

    """
    identifier: Identifier = jose.field('identifier', decoder=Identifier.from_json, omitempty=True)
    challenges: List[ChallengeBody] = jose.field('challenges', omitempty=True)
    combinations: Tuple[Tuple[int, ...], ...] = jose.field('combinations', omitempty=True)

    status: Status = jose.field('status', omitempty=True, decoder=Status.from_json)
    expires: datetime.datetime = fields.rfc3339('expires', omitempty=True)

    # The decoder is attached to the field of the same name.
    @challenges.decoder  # type: ignore
    def challenges(value: List[Dict[str, Any]]) -> Tuple[ChallengeBody, ...]:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        return tuple(ChallengeBody.from_json(chall) for chall in value)


@Directory.register
class NewAuthorization(Authorization):
    """Body of a new-authz request."""
    resource_type = 'new-authz'
    resource: str = fields.resource(resource_type)


class AuthorizationResource(ResourceWithURI):
    """Authorization with its URL.

    :ivar acmeclient.messages.Authorization body:
    :ivar str new_cert_uri: ``next`` link, where to request the certificate.

    """
    body: Authorization = jose.field('body', decoder=Authorization.from_json)
    new_cert_uri: str = jose.field('new_cert_uri', omitempty=True)

    @property
    def domain(self) -> str:
        """Domain name this authorization proves control of."""
        return self.body.identifier.value  # pylint: disable=no-member


@Directory.register
class CertificateRequest(jose.JSONObjectWithFields):
    """Body of a new-cert request.

    :ivar x509.CertificateSigningRequest csr: Sent as base64url DER.

    """
    resource_type = 'new-cert'
    resource: str = fields.resource(resource_type)
    csr: x509.CertificateSigningRequest = jose.field(
        'csr', decoder=jose.decode_csr, encoder=jose.encode_csr)


class CertificateResource(ResourceWithURI):
    """Issued certificate.

    :ivar x509.Certificate body:
    :ivar str cert_chain_uri: ``up`` link, to the issuer certificate.
    :ivar tuple authzrs: Authorizations the certificate was requested with.

    """
    body: x509.Certificate = jose.field(
        'body', decoder=jose.decode_cert, encoder=jose.encode_cert)
    cert_chain_uri: str = jose.field('cert_chain_uri', omitempty=True)
    authzrs: Tuple[AuthorizationResource, ...] = jose.field('authzrs', omitempty=True)


@Directory.register
class Revocation(jose.JSONObjectWithFields):
    """Body of a revoke-cert request.

    :ivar x509.Certificate certificate:
    :ivar int reason: CRL reason code.

    """
    resource_type = 'revoke-cert'
    resource: str = fields.resource(resource_type)
    certificate: x509.Certificate = jose.field(
        'certificate', decoder=jose.decode_cert, encoder=jose.encode_cert)
    reason: int = jose.field('reason', omitempty=True)
