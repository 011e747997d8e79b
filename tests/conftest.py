import asyncio

import pytest
from fastapi.testclient import TestClient

from iotca.approval import StaticApprovalGate
from iotca.authority import build_authority
from iotca.challenge import AuthProof, ProofKind, compute_hmac_proof
from iotca.config import Settings
from iotca.db import Database
from iotca.keys import get_key_codec
from iotca.main import create_app
from iotca.registry import ServiceIdentity, ServiceMetadata
from iotca.util import b64e

ADMIN_TOKEN = "admin-secret-token"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "ca.db"),
        approval_mode="auto_approve",
        admin_token=ADMIN_TOKEN,
    )


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "unit.db"))
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def authority(settings):
    ca = build_authority(settings, approval_gate=StaticApprovalGate(True))
    yield ca
    ca.close()


@pytest.fixture
def client(authority):
    app = create_app(authority=authority)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def prove():
    """Build the challenge proof a service would send for a nonce."""
    def _prove(keys, nonce):
        codec = get_key_codec(keys.algorithm)
        if codec.proof_kind == ProofKind.SIGNATURE.value:
            return AuthProof(ProofKind.SIGNATURE, b64e(codec.sign(keys.private_key, nonce.encode("utf-8"))))
        return AuthProof(ProofKind.HMAC, compute_hmac_proof(codec.secret_bytes(keys.private_key), nonce))
    return _prove


@pytest.fixture
def onboard():
    def _onboard(ca, name, service_id, can_write_data=False, private_key=None):
        result = asyncio.run(ca.connection_request(
            ServiceIdentity(name, service_id),
            ServiceMetadata(owner="lab", description=f"{name} test service", can_write_data=can_write_data),
            private_key=private_key,
        ))
        return result.record
    return _onboard


@pytest.fixture
def login(prove):
    """Challenge-response login; returns a session proof."""
    def _login(ca, record):
        challenge = ca.issue_token(record.service_name)
        session = ca.authenticate(record.service_name, prove(record.key_pair, challenge.nonce))
        assert session is not None
        return AuthProof(ProofKind.SESSION, session.token)
    return _login
