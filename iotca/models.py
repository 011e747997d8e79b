from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .challenge import AuthProof, ProofKind
from .errors import ValidationError
from .hybrid import SealedPayload
from .registry import ServiceIdentity, ServiceMetadata


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProofBody(_Body):
    kind: str
    value: str

    def to_proof(self) -> AuthProof:
        return AuthProof.from_dict({"kind": self.kind, "value": self.value})


def _proof_or_legacy(proof: Optional[ProofBody], private_key: Optional[str]) -> Optional[AuthProof]:
    if proof is not None:
        return proof.to_proof()
    if private_key:
        return AuthProof(ProofKind.PRIVATE_KEY, private_key)
    return None


class ConnectionRequestBody(_Body):
    service_name: str = Field(alias="serviceName")
    service_id: str = Field(alias="serviceId")
    description: str = ""
    owner: str = ""
    address: Any = Field(default=None, validation_alias=AliasChoices("address", "ipAddress", "addresses"))
    can_write_data: bool = Field(default=False, alias="canWriteData")
    private_key: Optional[str] = Field(default=None, alias="privateKey")
    target_service_id: Optional[str] = Field(default=None, alias="targetServiceId")

    def identity(self) -> ServiceIdentity:
        return ServiceIdentity(self.service_name, self.service_id)

    def metadata(self) -> ServiceMetadata:
        return ServiceMetadata(self.owner, self.description, self.address, self.can_write_data)


class GenerateTokenBody(_Body):
    service_name: str = Field(alias="serviceName")


class AuthenticateBody(_Body):
    service_name: str = Field(alias="serviceName")
    signature: Optional[str] = None
    hmac: Optional[str] = None
    proof: Optional[ProofBody] = None

    def to_proof(self) -> AuthProof:
        if self.proof is not None:
            return self.proof.to_proof()
        if self.signature:
            return AuthProof(ProofKind.SIGNATURE, self.signature)
        if self.hmac:
            return AuthProof(ProofKind.HMAC, self.hmac)
        raise ValidationError("proof", "one of signature, hmac or proof is required")


class RequestKeyBody(_Body):
    requester_service_id: str = Field(alias="requesterServiceId")
    requester_proof: Optional[ProofBody] = Field(default=None, alias="requesterProof")
    requester_private_key: Optional[str] = Field(default=None, alias="requesterPrivateKey")
    target_service_id: str = Field(alias="targetServiceId")

    def to_proof(self) -> Optional[AuthProof]:
        return _proof_or_legacy(self.requester_proof, self.requester_private_key)


class RecordBody(_Body):
    collection: str
    encrypted_data: str = Field(alias="encryptedData")
    iv: str
    encrypted_symmetric_key: str = Field(
        validation_alias=AliasChoices("encryptedSymmetricKey", "encryptedAESKey", "encrypted_symmetric_key")
    )

    def to_sealed(self) -> SealedPayload:
        return SealedPayload.from_wire({
            "encryptedData": self.encrypted_data,
            "iv": self.iv,
            "encryptedSymmetricKey": self.encrypted_symmetric_key,
        })


class SubmitDataBody(_Body):
    service_id: str = Field(alias="serviceId")
    proof: Optional[ProofBody] = None
    private_key: Optional[str] = Field(default=None, alias="privateKey")
    record: RecordBody

    def to_proof(self) -> Optional[AuthProof]:
        return _proof_or_legacy(self.proof, self.private_key)


class RequestDataBody(_Body):
    requester_service_id: str = Field(alias="requesterServiceId")
    requester_proof: Optional[ProofBody] = Field(default=None, alias="requesterProof")
    requester_private_key: Optional[str] = Field(default=None, alias="requesterPrivateKey")
    target_service_id: str = Field(alias="targetServiceId")
    collection: Optional[str] = None

    def to_proof(self) -> Optional[AuthProof]:
        return _proof_or_legacy(self.requester_proof, self.requester_private_key)


class ApprovalDecisionBody(_Body):
    approved: bool
