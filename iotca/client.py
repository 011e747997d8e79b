"""
Client for services that talk to the CA.

Covers what acquisition and consumer services need: onboarding with a local
keys file, challenge-response login, sealing records for submission, and
opening records released by the CA.

The transport is anything with a ``requests.Session``-like ``request`` method,
so the same client runs against a live server or an in-process test client.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests

from .challenge import ProofKind, compute_hmac_proof
from .hybrid import SealedPayload, open_sealed, seal
from .keys import KeyPair, get_key_codec
from .util import b64e

logger = logging.getLogger(__name__)


class CAClientError(Exception):
    """Non-2xx answer from the CA."""

    def __init__(self, status: int, error: str, code: Optional[str] = None, payload: Optional[Dict[str, Any]] = None):
        super().__init__(f"{status} {code or 'ERROR'}: {error}")
        self.status = status
        self.error = error
        self.code = code
        self.payload = payload or {}


def decode_payload(plaintext: bytes) -> Any:
    """JSON document if the payload is one, text otherwise."""
    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError:
        return plaintext
    try:
        return json.loads(text)
    except ValueError:
        return text


class CAClient:
    def __init__(
        self,
        base_url: str,
        service_name: str,
        service_id: str,
        session: Any = None,
        timeout: Optional[float] = 10,
        keys: Optional[KeyPair] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.service_id = service_id
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.keys = keys
        self.session_token: Optional[str] = None

    # ---------------------------
    # Transport
    # ---------------------------

    def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None):
        kwargs: Dict[str, Any] = {}
        if json_body is not None:
            kwargs["json"] = json_body
        if headers:
            kwargs["headers"] = headers
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        resp = self.session.request(method, self.base_url + path, **kwargs)
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {"error": resp.text}
            if not isinstance(body, dict):
                body = {"error": str(body)}
            error = body.get("error") or f"HTTP {resp.status_code}"
            raise CAClientError(resp.status_code, error, body.get("code"), body)
        return resp

    def _post(self, path: str, body: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self._request("POST", path, body, headers).json()

    # ---------------------------
    # Keys
    # ---------------------------

    def _require_keys(self) -> KeyPair:
        if self.keys is None:
            raise RuntimeError(f"{self.service_name} has no keys; call connect() first")
        return self.keys

    def save_keys(self, path: Union[str, Path]) -> None:
        keys = self._require_keys()
        data = keys.to_dict()
        data["serviceId"] = self.service_id
        Path(path).write_text(json.dumps(data, indent=2), encoding="utf-8")

    def load_keys(self, path: Union[str, Path]) -> bool:
        """Load a keys file written by :meth:`save_keys`. Returns False if there is none."""
        p = Path(path)
        if not p.exists():
            return False
        data = json.loads(p.read_text(encoding="utf-8"))
        self.keys = KeyPair(data["privateKey"], data["publicKey"], data.get("algorithm", "rsa"))
        return True

    # ---------------------------
    # Onboarding and login
    # ---------------------------

    def connect(self, owner: str = "", description: str = "", addresses: Any = None,
                can_write_data: bool = False) -> Dict[str, Any]:
        """
        Onboard, or prove recognition with the local private key if one is loaded.
        Stores the returned keys on the client.
        """
        body: Dict[str, Any] = {
            "serviceName": self.service_name,
            "serviceId": self.service_id,
            "owner": owner,
            "description": description,
            "address": addresses,
            "canWriteData": can_write_data,
        }
        if self.keys is not None:
            body["privateKey"] = self.keys.private_key
        data = self._post("/connectionRequest", body)
        keys = data["keys"]
        self.keys = KeyPair(keys["privateKey"], keys["publicKey"], keys["algorithm"])
        return data

    def answer_challenge(self, nonce: str) -> Dict[str, str]:
        """Proof of key possession over a nonce, shaped for the wire."""
        keys = self._require_keys()
        codec = get_key_codec(keys.algorithm)
        if codec.proof_kind == ProofKind.SIGNATURE.value:
            value = b64e(codec.sign(keys.private_key, nonce.encode("utf-8")))
        else:
            value = compute_hmac_proof(codec.secret_bytes(keys.private_key), nonce)
        return {"kind": codec.proof_kind, "value": value}

    def authenticate(self) -> str:
        """Run challenge-response and keep the session token."""
        token = self._post("/generateToken", {"serviceName": self.service_name})["token"]
        data = self._post("/authenticate", {"serviceName": self.service_name, "proof": self.answer_challenge(token)})
        self.session_token = data["sessionToken"]
        logger.info("%s authenticated", self.service_name)
        return self.session_token

    def _proof(self) -> Dict[str, str]:
        if self.session_token is None:
            self.authenticate()
        return {"kind": ProofKind.SESSION.value, "value": self.session_token}

    def _post_with_session(self, path: str, body: Dict[str, Any], proof_field: str) -> Dict[str, Any]:
        """
        POST with a session proof. A cached session the CA no longer accepts
        (expired, or lost on a CA restart) is replaced once by a fresh login.
        """
        cached = self.session_token is not None
        try:
            return self._post(path, {**body, proof_field: self._proof()})
        except CAClientError as exc:
            if not cached or exc.code != "AUTHENTICATION_FAILED":
                raise
        logger.info("%s session rejected on %s; authenticating again", self.service_name, path)
        self.session_token = None
        return self._post(path, {**body, proof_field: self._proof()})

    # ---------------------------
    # Data plane
    # ---------------------------

    def get_public_key(self, service_name: Optional[str] = None, service_id: Optional[str] = None) -> str:
        if service_id:
            return self._request("GET", f"/services/{service_id}/publicKey").text
        return self._request("GET", f"/publicKey/{service_name or self.service_name}").text

    def submit(self, collection: str, payload: Union[Dict[str, Any], List[Any], str, bytes]) -> Dict[str, Any]:
        """Seal a payload under this service's public key and hand it to the CA."""
        keys = self._require_keys()
        if isinstance(payload, bytes):
            plaintext = payload
        elif isinstance(payload, str):
            plaintext = payload.encode("utf-8")
        else:
            plaintext = json.dumps(payload).encode("utf-8")
        sealed = seal(get_key_codec(keys.algorithm), keys.public_key, plaintext)
        record = {"collection": collection, **sealed.to_wire()}
        return self._post_with_session("/submitData", {"serviceId": self.service_id, "record": record}, "proof")

    def request_key(self, target_service_id: str) -> Dict[str, Any]:
        return self._post_with_session("/requestKey", {
            "requesterServiceId": self.service_id,
            "targetServiceId": target_service_id,
        }, "requesterProof")

    def request_data(self, target_service_id: str, collection: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch another service's records and open them with this service's private key."""
        keys = self._require_keys()
        body: Dict[str, Any] = {
            "requesterServiceId": self.service_id,
            "targetServiceId": target_service_id,
        }
        if collection is not None:
            body["collection"] = collection
        codec = get_key_codec(keys.algorithm)
        records = []
        for item in self._post_with_session("/requestDecryptedData", body, "requesterProof")["data"]:
            plaintext = open_sealed(codec, keys.private_key, SealedPayload.from_wire(item["data"]))
            records.append({
                "collection": item["collection"],
                "recordId": item["recordId"],
                "createdAt": item["createdAt"],
                "data": decode_payload(plaintext),
            })
        return records

    # ---------------------------
    # Operator
    # ---------------------------

    def pending_approvals(self, admin_token: str) -> List[Dict[str, Any]]:
        return self._request("GET", "/approvals", headers={"X-Admin-Token": admin_token}).json()["pending"]

    def resolve_approval(self, admin_token: str, request_id: str, approved: bool) -> Dict[str, Any]:
        return self._post(f"/approvals/{request_id}", {"approved": approved}, headers={"X-Admin-Token": admin_token})
