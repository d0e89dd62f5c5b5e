"""Shared fixtures: a test CA on disk, an in-memory repository and CSRs."""

import shutil

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import certflow.domain.models  # noqa: F401
from certflow.ca.authority_store import AuthorityBootstrapInput, AuthorityStore
from certflow.ca.identity import parse_dn
from shared.database import Base

CA_DN = "/CN=Test CA"
CA_PASSPHRASE = "secret123"


def build_csr(dn: str = "/CN=www.example.com", key: rsa.RSAPrivateKey | None = None) -> str:
    """Create a PEM CSR for dn, signed with key or a fresh 2048 bit key."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(parse_dn(dn).to_x509())
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("utf-8")


@pytest.fixture
def make_csr():
    return build_csr


@pytest.fixture(scope="session")
def ca_template(tmp_path_factory):
    """A CA bootstrapped once per run; tests get their own copy via ca_dir."""
    path = tmp_path_factory.mktemp("ca-template") / "ca"
    options = AuthorityBootstrapInput(dn=CA_DN, destination=path, key_length=2048)
    AuthorityStore().bootstrap(options, CA_PASSPHRASE).close()
    return path


@pytest.fixture
def ca_dir(ca_template, tmp_path):
    return shutil.copytree(ca_template, tmp_path / "ca")


@pytest.fixture
def authority(ca_dir):
    with AuthorityStore().load(ca_dir, CA_PASSPHRASE) as loaded:
        yield loaded


@pytest_asyncio.fixture
async def db_session():
    """In-memory SQLite session with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session

    await engine.dispose()
