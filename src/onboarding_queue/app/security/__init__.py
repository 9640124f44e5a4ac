"""Credential encryption and operator authentication."""

from .credential_cipher import CredentialCipher, CredentialCipherError
from .operator_auth import OPERATOR_HEADER, OperatorIdentity, get_operator_identity

__all__ = [
    'CredentialCipher',
    'CredentialCipherError',
    'OPERATOR_HEADER',
    'OperatorIdentity',
    'get_operator_identity',
]
