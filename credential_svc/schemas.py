from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field

class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class SubjectProfile(_Camel):
    """Profile snapshot a credential is minted from."""
    subject_id: str = Field(alias="subjectId")
    name: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    address: str | None = None
    age: int | str | None = None
    mobile: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        full = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full or self.subject_id

class ProfileUpdate(_Camel):
    name: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    address: str | None = None
    age: int | str | None = None
    mobile: str | None = None
    phone: str | None = None

class CredentialPayload(_Camel):
    subject_id: str = Field(alias="subjectId")
    display_name: str = Field(alias="displayName")
    address: str | None = None
    age: int | str | None = None
    mobile: str | None = None
    issued_at: str = Field(alias="issuedAt")
    nonce: str
    version: str = "1.0"

class Credential(_Camel):
    payload: CredentialPayload
    signature: str
    generated_at: str = Field(alias="generatedAt")

class GenerateResult(BaseModel):
    success: bool
    credential: Credential | None = None
    error: str | None = None

class ValidationResult(BaseModel):
    valid: bool
    payload: CredentialPayload | None = None
    error: str | None = None
    subject_id: str | None = None

class VerifyRequest(BaseModel):
    value: str
    event_id: str | None = None
