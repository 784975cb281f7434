"""JWS with the ACME protected header members.

Every signed request carries the account ``jwk``, the anti-replay
``nonce`` and the target ``url`` in its protected header.

"""
from typing import Dict
from typing import Optional

import josepy as jose

EC_CURVE_ALGORITHMS: Dict[str, jose.JWASignature] = {
    'secp256r1': jose.ES256,
    'secp384r1': jose.ES384,
    'secp521r1': jose.ES512,
}
"""Signature algorithm for each supported elliptic curve."""


class Header(jose.Header):
    """Header with the ``nonce`` and ``url`` members.
    """
    nonce: Optional[bytes] = jose.field('nonce', omitempty=True, encoder=jose.encode_b64jose)
    url: Optional[str] = jose.field('url', omitempty=True)

    # Redefinition through the field decoder.
    @nonce.decoder  # type: ignore[no-redef,attr-defined,union-attr]
    def nonce(value: str) -> bytes:  # type: ignore[misc]  # pylint: disable=no-self-argument,missing-function-docstring
        try:
            return jose.decode_b64jose(value)
        except jose.DeserializationError as error:
            raise jose.DeserializationError("Invalid nonce: {0}".format(error))


class Signature(jose.Signature):
    """Signature whose header is a `Header`."""
    __slots__ = jose.Signature._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access,no-member

    header_cls = Header
    header: Header = jose.field(
        'header', omitempty=True, default=header_cls(),
        decoder=header_cls.from_json)


class JWS(jose.JWS):
    """JWS protecting ``alg``, ``jwk``, ``nonce`` and ``url``."""
    signature_cls = Signature
    __slots__ = jose.JWS._orig_slots  # type: ignore[attr-defined]  # pylint: disable=protected-access

    @classmethod
    # type: ignore[override]  # pylint: disable=arguments-differ
    def sign(cls, payload: bytes, key: jose.JWK, alg: jose.JWASignature, nonce: Optional[bytes],
             url: Optional[str] = None) -> jose.JWS:
        # The account is identified by its public key, so the jwk is
        # always embedded.
        return super().sign(payload, key=key, alg=alg,
                            protect=frozenset(['nonce', 'url', 'jwk', 'alg']),
                            nonce=nonce, url=url, include_jwk=True)


def alg_for_key(key: jose.JWK) -> jose.JWASignature:
    """Signature algorithm matching an account key.

    :param josepy.JWK key: Account key.

    :raises ValueError: for key types or curves that cannot sign requests.

    :rtype: `josepy.JWASignature`

    """
    if isinstance(key, jose.JWKRSA):
        return jose.RS256
    if isinstance(key, jose.JWKEC):
        curve = key.key.curve.name
        try:
            return EC_CURVE_ALGORITHMS[curve]
        except KeyError:
            raise ValueError('Unsupported elliptic curve: {0}'.format(curve))
    raise ValueError('Unsupported account key type: {0}'.format(type(key).__name__))
