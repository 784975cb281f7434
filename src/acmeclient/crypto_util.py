"""Certificate keys, signing requests and certificate encoding."""
import enum
from typing import Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding
from OpenSSL import crypto


class Format(enum.IntEnum):
    """Encoding of a certificate.

    The values are pyOpenSSL's ``FILETYPE_ASN1`` and ``FILETYPE_PEM``, so
    either can be passed where one is expected.

    """
    DER = crypto.FILETYPE_ASN1
    PEM = crypto.FILETYPE_PEM

    def to_cryptography_encoding(self) -> Encoding:
        return Encoding.DER if self == Format.DER else Encoding.PEM


def make_private_key(bits: int = 2048) -> bytes:
    """Generate an RSA key for a new certificate.

    :param int bits: Key size in bits.

    :returns: PEM-encoded, unencrypted PKCS#8 private key.
    :rtype: bytes

    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    return key.private_bytes(
        encoding=Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption())


def make_csr(private_key_pem: bytes, domains: Sequence[str]) -> bytes:
    """Certificate signing request for ``domains``.

    Every domain becomes a DNS subjectAltName, in the given order; the
    first one is also the subject common name.

    :param bytes private_key_pem: PEM PKCS#8 RSA or EC private key.
    :param list domains: Domain names, at least one.

    :returns: PEM-encoded CSR, signed with SHA-256.
    :rtype: bytes

    :raises ValueError: if ``domains`` is empty or the key cannot sign.

    """
    if not domains:
        raise ValueError("At least one domain is required")
    private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError("Invalid private key type: {0}".format(type(private_key)))

    subject = x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, domains[0])])
    san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains])
    csr = (x509.CertificateSigningRequestBuilder()
           .subject_name(subject)
           .add_extension(san, critical=False)
           .sign(private_key, hashes.SHA256()))
    return csr.public_bytes(Encoding.PEM)


def load_certificate(data: bytes, fmt: Format = Format.PEM) -> x509.Certificate:
    """Parse a PEM or DER certificate.

    :raises ValueError: if ``data`` is not a certificate.

    """
    if fmt == Format.DER:
        return x509.load_der_x509_certificate(data)
    return x509.load_pem_x509_certificate(data)


def dump_certificate(cert: x509.Certificate, fmt: Format = Format.PEM) -> bytes:
    return cert.public_bytes(fmt.to_cryptography_encoding())
