"""Detached CMS signatures for extension archives.

Signatures are PEM-armored CMS SignedData envelopes (label ``CMS``) over
the exact bytes of the inner archive. The signer certificate is embedded
so any CMS verifier holding the issuing CA certificate can check them,
for example ``openssl cms -verify -binary -inform PEM``.
"""

from __future__ import annotations

import datetime
import hashlib
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from asn1crypto import cms, pem
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7

from extforge.core.logging_manager import get_logger
from extforge.pipeline.package import ArchiveAssembler
from extforge.utils.exceptions import PrerequisiteError, SigningError, VerificationError

logger = get_logger(__name__)

PEM_LABEL = 'CMS'

DIGESTS: Dict[str, Callable[[], hashes.HashAlgorithm]] = {
    'sha1': hashes.SHA1,
    'sha224': hashes.SHA224,
    'sha256': hashes.SHA256,
    'sha384': hashes.SHA384,
    'sha512': hashes.SHA512,
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _public_key_bytes(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _read_file(path: Path, what: str) -> bytes:
    if not path.is_file():
        raise PrerequisiteError(f"{what} not found: {path}", path=str(path))
    try:
        return path.read_bytes()
    except OSError as e:
        raise SigningError(f"Cannot read {what.lower()} {path}: {e}", path=str(path)) from e


def load_certificate(path: Union[str, Path]) -> x509.Certificate:
    """Load a PEM or DER X.509 certificate.

    Raises:
        PrerequisiteError: If the file does not exist
        SigningError: If the file is not a certificate
    """
    path = Path(path)
    data = _read_file(path, 'Certificate')
    try:
        if b'-----BEGIN' in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise SigningError(f"Invalid certificate {path}: {e}", path=str(path)) from e


class Signer:
    """Signs content with a developer key and certificate.

    Attributes:
        private_key: RSA or EC private key
        certificate: Certificate matching ``private_key``
    """

    def __init__(
            self,
            private_key: Any,
            certificate: x509.Certificate,
            clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        """Initialize a signer.

        Args:
            private_key: RSA or EC private key
            certificate: Developer certificate for the key
            clock: Returns the current UTC time

        Raises:
            SigningError: If the key is unsupported, does not belong to the
                certificate, or the certificate is not currently valid
        """
        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise SigningError(f"Unsupported key type: {type(private_key).__name__}")
        self.private_key = private_key
        self.certificate = certificate
        self._clock = clock

        if _public_key_bytes(private_key.public_key()) != _public_key_bytes(certificate.public_key()):
            raise SigningError(
                "Developer key does not match the certificate",
                subject=certificate.subject.rfc4514_string(),
            )
        self.check_validity()

    @classmethod
    def from_files(
            cls,
            key_path: Union[str, Path],
            certificate_path: Union[str, Path],
            password: Optional[str] = None,
    ) -> Signer:
        """Load a signer from PEM files.

        Args:
            key_path: Private key file
            certificate_path: Certificate file
            password: Passphrase of an encrypted key

        Returns:
            Signer instance

        Raises:
            PrerequisiteError: If a file is missing
            SigningError: If the key material is unreadable or invalid
        """
        key_path = Path(key_path)
        key_data = _read_file(key_path, 'Developer key')
        certificate = load_certificate(certificate_path)

        try:
            private_key = serialization.load_pem_private_key(
                key_data, password=password.encode('utf-8') if password else None
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise SigningError(f"Invalid developer key {key_path}: {e}", path=str(key_path)) from e

        return cls(private_key, certificate)

    def check_validity(self) -> None:
        """Raise SigningError unless the certificate is valid right now."""
        now = self._clock()
        not_before = self.certificate.not_valid_before_utc
        not_after = self.certificate.not_valid_after_utc
        if now < not_before:
            raise SigningError(
                f"Developer certificate is not valid before {not_before.isoformat()}",
                not_before=not_before.isoformat(),
            )
        if now > not_after:
            raise SigningError(
                f"Developer certificate expired on {not_after.isoformat()}",
                not_after=not_after.isoformat(),
            )

    def sign(self, content: bytes) -> bytes:
        """Create a detached signature over ``content``.

        Args:
            content: Bytes to sign (the inner archive)

        Returns:
            PEM-armored CMS SignedData

        Raises:
            SigningError: If the certificate is no longer valid or signing fails
        """
        self.check_validity()
        try:
            der = (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(content)
                .add_signer(self.certificate, self.private_key, hashes.SHA256())
                .sign(
                    serialization.Encoding.DER,
                    [
                        pkcs7.PKCS7Options.DetachedSignature,
                        pkcs7.PKCS7Options.Binary,
                        pkcs7.PKCS7Options.NoAttributes,
                    ],
                )
            )
        except (ValueError, TypeError) as e:
            raise SigningError(f"Failed to sign content: {e}") from e

        logger.debug("Content signed", size=len(content), digest=hashlib.sha256(content).hexdigest())
        return pem.armor(PEM_LABEL, der)

    def fused_pem(self) -> bytes:
        """Certificate followed by the unencrypted key, as one PEM blob."""
        return self.certificate.public_bytes(serialization.Encoding.PEM) + self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


class SignatureVerifier:
    """Verifies detached CMS signatures against a trusted certificate.

    The signer certificate embedded in the envelope must either be the
    trusted certificate itself or be directly issued by it.
    """

    def __init__(self, trusted_certificate: x509.Certificate) -> None:
        self.trusted_certificate = trusted_certificate

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> SignatureVerifier:
        try:
            return cls(load_certificate(path))
        except SigningError as e:
            raise VerificationError(e.message, **e.details) from e

    def verify(self, content: bytes, signature: bytes) -> bool:
        """Verify ``signature`` over ``content``.

        Returns:
            True when the signature is valid

        Raises:
            VerificationError: If the envelope is malformed, the signer is
                not trusted or the signature does not match
        """
        signed_data = self._load_signed_data(signature)
        certificates = [
            choice.chosen for choice in (signed_data['certificates'] or []) if choice.name == 'certificate'
        ]
        signer_infos = list(signed_data['signer_infos'])
        if not signer_infos:
            raise VerificationError("Signature envelope has no signer")

        for signer_info in signer_infos:
            signer_cert = self._find_signer_certificate(signer_info, certificates)
            self._check_trust(signer_cert)
            self._check_signature(signer_info, signer_cert, content)

        return True

    def verify_archive(self, outer: bytes) -> bool:
        """Verify the signature stored inside an outer archive."""
        inner, signature = ArchiveAssembler.split_outer(outer)
        return self.verify(inner, signature)

    @staticmethod
    def _load_signed_data(signature: bytes) -> cms.SignedData:
        try:
            der = pem.unarmor(signature)[2] if pem.detect(signature) else signature
            content_info = cms.ContentInfo.load(der)
            if content_info['content_type'].native != 'signed_data':
                raise VerificationError(
                    f"Unexpected envelope content type: {content_info['content_type'].native}"
                )
            signed_data = content_info['content']
            # force a full parse so malformed input fails here
            signed_data.native
            return signed_data
        except (ValueError, TypeError, KeyError) as e:
            raise VerificationError(f"Malformed signature envelope: {e}") from e

    @staticmethod
    def _find_signer_certificate(signer_info: cms.SignerInfo, certificates: List[Any]) -> x509.Certificate:
        sid = signer_info['sid']
        for candidate in certificates:
            if sid.name == 'issuer_and_serial_number':
                matches = (
                    candidate.issuer.dump() == sid.chosen['issuer'].dump()
                    and candidate.serial_number == sid.chosen['serial_number'].native
                )
            else:
                matches = candidate.key_identifier == sid.chosen.native
            if matches:
                return x509.load_der_x509_certificate(candidate.dump())
        raise VerificationError("Signer certificate is not embedded in the envelope")

    def _check_trust(self, signer_cert: x509.Certificate) -> None:
        if signer_cert == self.trusted_certificate:
            return
        try:
            signer_cert.verify_directly_issued_by(self.trusted_certificate)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise VerificationError(
                "Signer certificate is not issued by the trusted certificate",
                signer=signer_cert.subject.rfc4514_string(),
                trusted=self.trusted_certificate.subject.rfc4514_string(),
            ) from e

    @staticmethod
    def _check_signature(signer_info: cms.SignerInfo, signer_cert: x509.Certificate, content: bytes) -> None:
        digest_name = signer_info['digest_algorithm']['algorithm'].native
        if digest_name not in DIGESTS:
            raise VerificationError(f"Unsupported digest algorithm: {digest_name}")
        hash_algorithm = DIGESTS[digest_name]()

        signed_attrs = signer_info['signed_attrs']
        if signed_attrs.native:
            message_digest = None
            for attr in signed_attrs:
                if attr['type'].native == 'message_digest':
                    message_digest = attr['values'][0].native
            digest = hashes.Hash(hash_algorithm)
            digest.update(content)
            if message_digest != digest.finalize():
                raise VerificationError("Message digest does not match the content")
            # signed attributes are signed as an explicit SET
            signed_bytes = b'\x31' + signed_attrs.dump()[1:]
        else:
            signed_bytes = content

        signature = signer_info['signature'].native
        public_key = signer_cert.public_key()
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                if signer_info['signature_algorithm']['algorithm'].native == 'rsassa_pss':
                    raise VerificationError("RSASSA-PSS signatures are not supported")
                public_key.verify(signature, signed_bytes, padding.PKCS1v15(), hash_algorithm)
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, signed_bytes, ec.ECDSA(hash_algorithm))
            else:
                raise VerificationError(f"Unsupported signer key type: {type(public_key).__name__}")
        except InvalidSignature as e:
            raise VerificationError("Signature does not match the content") from e
