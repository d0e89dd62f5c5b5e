"""Certificate Authority core.

This module provides:
- Distinguished name parsing and content-addressed request ids
- CA bootstrap and passphrase-protected loading
- Request validation, certificate signing and CRL generation
"""

from certflow.ca.authority_store import Authority, AuthorityStore
from certflow.ca.crl import CRLBuilder
from certflow.ca.request_builder import RequestBuilder
from certflow.ca.signing_engine import Certificate, SigningEngine

__all__ = [
    "Authority",
    "AuthorityStore",
    "CRLBuilder",
    "Certificate",
    "RequestBuilder",
    "SigningEngine",
]
