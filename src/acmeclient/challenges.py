"""Identifier validation challenges and the responses to them.

Only ``http-01`` can be solved. Any other type offered by an authority
deserializes to `UnrecognizedChallenge` so the rest of the authorization
stays readable.

"""
import abc
import functools
import logging
from typing import Any
from typing import cast
from typing import Dict
from typing import Mapping
from typing import Tuple
from typing import Type
from typing import TypeVar
from typing import Union

from cryptography.hazmat.primitives import hashes
import josepy as jose

from acmeclient import fields

logger = logging.getLogger(__name__)

GenericChallenge = TypeVar('GenericChallenge', bound='Challenge')


class Challenge(jose.TypedJSONObjectWithFields):
    """Challenge offered by the authority, keyed by its ``type``."""
    TYPES: Dict[str, Type['Challenge']] = {}

    @classmethod
    def from_json(cls: Type[GenericChallenge],
                  jobj: Mapping[str, Any]) -> Union[GenericChallenge, 'UnrecognizedChallenge']:
        try:
            return cast(GenericChallenge, super().from_json(jobj))
        except jose.UnrecognizedTypeError as error:
            logger.debug(error)
            return UnrecognizedChallenge.from_json(jobj)


class ChallengeResponse(jose.TypedJSONObjectWithFields):
    """Answer POSTed to a challenge URI.

    Besides its ``type`` it names the ``challenge`` resource, like every
    other request body.

    """
    TYPES: Dict[str, Type['ChallengeResponse']] = {}
    resource_type = 'challenge'
    resource: str = fields.resource(resource_type)


class UnrecognizedChallenge(Challenge):
    """Challenge of a type this client cannot solve.

    :ivar jobj: JSON object as received.

    """
    jobj: Dict[str, Any]

    def __init__(self, jobj: Mapping[str, Any]) -> None:
        super().__init__()
        object.__setattr__(self, "jobj", jobj)

    @property
    def typ(self) -> str:  # type: ignore[override]
        """Type tag as sent by the authority."""
        return self.jobj.get('type', 'unknown')  # pylint: disable=no-member

    def to_partial_json(self) -> Dict[str, Any]:
        return self.jobj  # pylint: disable=no-member

    @classmethod
    def from_json(cls, jobj: Mapping[str, Any]) -> 'UnrecognizedChallenge':
        return cls(jobj)


class KeyAuthorizationChallengeResponse(ChallengeResponse):
    """Response carrying a key authorization.

    :ivar str key_authorization: ``token.thumbprint`` of the account key.

    """
    key_authorization: str = jose.field("keyAuthorization")


class KeyAuthorizationChallenge(Challenge, metaclass=abc.ABCMeta):
    """Challenge proven with a key authorization of its token.

    :ivar bytes token: Random value chosen by the authority, at least
        `TOKEN_SIZE` bytes long.

    """
    TOKEN_SIZE = 128 // 8

    typ: str = NotImplemented
    response_cls: Type[KeyAuthorizationChallengeResponse] = NotImplemented
    thumbprint_hash_function = hashes.SHA256

    token: bytes = jose.field(
        "token", encoder=jose.encode_b64jose, decoder=functools.partial(
            jose.decode_b64jose, size=TOKEN_SIZE, minimum=True))

    def key_authorization(self, account_key: jose.JWK) -> str:
        """Bind the token to ``account_key``.

        The thumbprint is the base64url SHA-256 digest of the canonical
        JSON form of the public key, so a private key gives the same
        result as its public part.

        """
        thumbprint = account_key.thumbprint(hash_function=self.thumbprint_hash_function)
        return self.encode("token") + "." + jose.b64encode(thumbprint).decode()

    def response(self, account_key: jose.JWK) -> KeyAuthorizationChallengeResponse:
        """Response to POST to the challenge URI."""
        return self.response_cls(  # pylint: disable=not-callable
            key_authorization=self.key_authorization(account_key))

    @abc.abstractmethod
    def validation(self, account_key: jose.JWK) -> Any:
        """What the authority expects to find when it validates."""
        raise NotImplementedError()  # pragma: no cover

    def response_and_validation(self, account_key: jose.JWK
                                ) -> Tuple[KeyAuthorizationChallengeResponse, Any]:
        """Both `response` and `validation` for ``account_key``."""
        return self.response(account_key), self.validation(account_key)


@ChallengeResponse.register
class HTTP01Response(KeyAuthorizationChallengeResponse):
    """Response to an http-01 challenge."""
    typ = "http-01"

    PORT = 80
    """Port the authority connects to when validating."""


@Challenge.register
class HTTP01(KeyAuthorizationChallenge):
    """http-01 challenge.

    The key authorization must be served as ``text/plain`` at `path` on
    port `HTTP01Response.PORT` of the domain.

    """
    response_cls = HTTP01Response
    typ = response_cls.typ

    URI_ROOT_PATH = ".well-known/acme-challenge"

    @property
    def path(self) -> str:
        """Absolute path of the provisioned resource."""
        return '/' + self.URI_ROOT_PATH + '/' + self.encode('token')

    def validation(self, account_key: jose.JWK) -> str:
        return self.key_authorization(account_key)
