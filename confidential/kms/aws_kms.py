from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.kms.provider import DecrypterUnavailable, RSADecrypter, WrappedKeyRejected
from confidential.security.cancellation import CancellationToken, check

KMS_OAEP_ALGORITHM = 'RSAES_OAEP_SHA_256'

_REJECTED_CODES = {'InvalidCiphertextException', 'IncorrectKeyException'}


class AWSKMSDecrypter(RSADecrypter):
    """AWS KMS asymmetric key (RSA_2048/3072/4096) unwrapping session keys.

    The private half never leaves KMS. Expects AWS credentials available in
    environment or instance role.
    """

    def __init__(self, key_id: str, region_name: Optional[str] = None, client=None):
        self.key_id = key_id
        self.client = client or boto3.client('kms', region_name=region_name)

    @classmethod
    def from_coordinate(cls, coordinate: WrappingKeyCoordinate, region_name: Optional[str] = None) -> "AWSKMSDecrypter":
        # KMS addresses keys by id, ARN or alias; the coordinate's key name carries it
        return cls(coordinate.key_name, region_name=region_name)

    def decrypt(self, ciphertext: bytes, cancellation: Optional[CancellationToken] = None) -> bytes:
        check(cancellation)
        try:
            resp = self.client.decrypt(
                KeyId=self.key_id,
                CiphertextBlob=ciphertext,
                EncryptionAlgorithm=KMS_OAEP_ALGORITHM
            )
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code', '')
            if code in _REJECTED_CODES:
                raise WrappedKeyRejected(f"KMS rejected the wrapped key ({code})")
            raise DecrypterUnavailable(f"KMS decrypt failed: {code or e}")
        except BotoCoreError as e:
            raise DecrypterUnavailable(f"KMS decrypt failed: {e}")
        # The result is dropped if the caller gave up while KMS was answering
        check(cancellation)
        return resp['Plaintext']

    def public_key(self) -> rsa.RSAPublicKey:
        """Fetch the wrapping public key so producers can encrypt offline."""
        try:
            resp = self.client.get_public_key(KeyId=self.key_id)
        except (BotoCoreError, ClientError) as e:
            raise RuntimeError(f"KMS get_public_key failed: {e}")
        key = serialization.load_der_public_key(resp['PublicKey'])
        if not isinstance(key, rsa.RSAPublicKey):
            raise RuntimeError(f"KMS key {self.key_id} is not an RSA key")
        return key
