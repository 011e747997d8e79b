import pytest

from iotca.challenge import AuthProof, ChallengeAuthenticator, ChallengeState, ProofKind, compute_hmac_proof
from iotca.errors import NotFound, ValidationError
from iotca.keys import get_key_codec
from iotca.registry import ServiceIdentity, ServiceMetadata, ServiceRegistry


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(db):
    reg = ServiceRegistry(db)
    reg.register(ServiceIdentity("sensor", "sensor-1"), get_key_codec("x25519").generate_key_pair(),
                 ServiceMetadata())
    reg.register(ServiceIdentity("reader", "reader-1"), get_key_codec("rsa").generate_key_pair(),
                 ServiceMetadata())
    return reg


@pytest.fixture
def auth(registry, clock):
    return ChallengeAuthenticator(registry, ttl_seconds=120, session_ttl_seconds=900, clock=clock)


def keys(registry, name):
    return registry.get(name).key_pair


def test_issue_requires_registered_service(auth):
    with pytest.raises(NotFound):
        auth.issue_challenge("ghost")
    assert auth.state("ghost") is ChallengeState.NO_CHALLENGE


def test_nonce_format(auth, clock):
    challenge = auth.issue_challenge("sensor")
    assert len(challenge.nonce) == 64
    int(challenge.nonce, 16)
    assert challenge.expires_at == clock.now + 120
    assert auth.state("sensor") is ChallengeState.ISSUED


@pytest.mark.parametrize("name", ["sensor", "reader"])
def test_valid_proof_consumes_challenge(auth, registry, prove, name):
    nonce = auth.issue_challenge(name).nonce
    proof = prove(keys(registry, name), nonce)
    assert auth.verify_challenge(name, proof) is True
    assert auth.state(name) is ChallengeState.CONSUMED
    # replay of the same proof
    assert auth.verify_challenge(name, proof) is False


def test_second_issue_invalidates_first(auth, registry, prove):
    first = auth.issue_challenge("sensor").nonce
    second = auth.issue_challenge("sensor").nonce
    assert first != second
    assert auth.verify_challenge("sensor", prove(keys(registry, "sensor"), first)) is False
    assert auth.verify_challenge("sensor", prove(keys(registry, "sensor"), second)) is True


def test_mismatch_keeps_challenge_for_retry(auth, registry, prove):
    nonce = auth.issue_challenge("sensor").nonce
    assert auth.verify_challenge("sensor", AuthProof(ProofKind.HMAC, "00" * 32)) is False
    assert auth.state("sensor") is ChallengeState.ISSUED
    assert auth.verify_challenge("sensor", prove(keys(registry, "sensor"), nonce)) is True


def test_expired_challenge_is_discarded(auth, registry, prove, clock):
    nonce = auth.issue_challenge("sensor").nonce
    clock.now += 121
    assert auth.state("sensor") is ChallengeState.EXPIRED
    assert auth.verify_challenge("sensor", prove(keys(registry, "sensor"), nonce)) is False
    assert auth.pending_count() == 0
    assert auth.state("sensor") is ChallengeState.EXPIRED


def test_no_challenge(auth, registry, prove):
    assert auth.verify_challenge("sensor", prove(keys(registry, "sensor"), "00" * 32)) is False
    assert auth.verify_challenge("ghost", AuthProof(ProofKind.HMAC, "00")) is False


def test_proof_kind_must_match_algorithm(auth, registry, prove):
    nonce = auth.issue_challenge("reader").nonce
    # an HMAC keyed by the PEM is not what RSA services prove with
    codec = get_key_codec("rsa")
    hmac_proof = AuthProof(ProofKind.HMAC, compute_hmac_proof(codec.secret_bytes(keys(registry, "reader").private_key),
                                                              nonce))
    assert auth.verify_challenge("reader", hmac_proof) is False
    assert auth.verify_challenge("reader", AuthProof(ProofKind.SIGNATURE, "!!not base64!!")) is False
    assert auth.verify_challenge("reader", prove(keys(registry, "reader"), nonce)) is True


def test_other_services_key_does_not_verify(auth, registry, prove):
    nonce = auth.issue_challenge("sensor").nonce
    stranger = get_key_codec("x25519").generate_key_pair()
    assert auth.verify_challenge("sensor", prove(stranger, nonce)) is False


def test_sessions(auth, clock):
    session = auth.open_session("sensor")
    assert auth.check_session("sensor", session.token)
    assert not auth.check_session("reader", session.token)
    assert not auth.check_session("sensor", "f" * 64)
    assert auth.session_count() == 1

    clock.now += 901
    assert not auth.check_session("sensor", session.token)
    assert auth.session_count() == 0


def test_purge_expired(auth, clock):
    auth.issue_challenge("sensor")
    auth.issue_challenge("reader")
    auth.open_session("sensor")
    clock.now += 200
    auth.issue_challenge("reader")
    assert auth.purge_expired() == 1
    clock.now += 1000
    assert auth.purge_expired() == 2
    assert auth.pending_count() == 0
    assert auth.session_count() == 0


class TestAuthProof:
    def test_from_dict(self):
        proof = AuthProof.from_dict({"kind": "hmac", "value": "ab"})
        assert proof.kind is ProofKind.HMAC

    @pytest.mark.parametrize("data", [
        {"kind": "password", "value": "x"},
        {"value": "x"},
        {"kind": "session", "value": "  "},
        {"kind": "signature"},
    ])
    def test_from_dict_rejects(self, data):
        with pytest.raises(ValidationError):
            AuthProof.from_dict(data)

    def test_repr_hides_value(self):
        assert "secret" not in repr(AuthProof(ProofKind.PRIVATE_KEY, "secret"))
